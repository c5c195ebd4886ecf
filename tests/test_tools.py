import shutil
from pathlib import Path
from types import SimpleNamespace

import pytest

from fakes import make_config, quiet_logger

from isobackup.backup.config import RemoteMount, SWAP_ESTIMATE_BYTES, SourceSpec
from isobackup.backup.errors import ToolError
from isobackup.backup.models import part_path
from isobackup.logging.logger import build_logger, run_command
from isobackup.tools import blockdev, iso, sshfs, system
from isobackup.tools.blockdev import DdCapture, PartcloneCapture, device_size
from isobackup.tools.iso import GenisoimagePackager, iso_signature_check
from isobackup.tools.system import backing_device, file_in_use, read_mounts, read_swaps, source_bytes
from isobackup.tools.toolchain import build_toolchain

MOUNTS = [
    ("/dev/md1", "/", "ext4"),
    ("/dev/sdc1", "/mnt/backup", "ext4"),
    ("backup@nas:/srv", "/mnt/backup/remote", "fuse.sshfs"),
]


def test_iso9660_command():
    cmd = GenisoimagePackager(quiet_logger(), "srv").build_command(
        Path("/mnt/backup/srv.tar.gz"), Path("/mnt/backup/srv.iso"), extended=False
    )

    assert cmd[:5] == ["genisoimage", "-o", "/mnt/backup/srv.iso", "-V", "srv"]
    assert "-J" in cmd and "-R" in cmd
    assert "-udf" not in cmd
    assert "-boot-info-table" not in cmd
    assert cmd[-1] == "/mnt/backup/srv.tar.gz"
    assert cmd[cmd.index("-b") + 1] == "srv.tar.gz"


def test_extended_command_uses_udf():
    cmd = GenisoimagePackager(quiet_logger()).build_command(Path("a.tar.gz"), Path("a.iso"), extended=True)

    assert "-udf" in cmd and "-allow-limited-size" in cmd
    assert "-J" not in cmd


def test_packager_renames_complete_image(tmp_path, monkeypatch):
    commands = []

    def fake_genisoimage(cmd, logger):
        commands.append(cmd)
        Path(cmd[2]).write_bytes(b"iso")

    monkeypatch.setattr(iso, "run_command", fake_genisoimage)
    output = tmp_path / "srv.iso"

    GenisoimagePackager(quiet_logger()).package(tmp_path / "srv.tar.gz", output, extended=False)

    assert commands[0][2] == str(part_path(output))
    assert output.read_bytes() == b"iso"
    assert not part_path(output).exists()


def test_packager_failure_leaves_no_image(tmp_path, monkeypatch):
    def dying_genisoimage(cmd, logger):
        Path(cmd[2]).write_bytes(b"\x00" * 40000)
        raise ToolError(cmd, 1, "No space left on device")

    monkeypatch.setattr(iso, "run_command", dying_genisoimage)
    output = tmp_path / "srv.iso"

    with pytest.raises(ToolError):
        GenisoimagePackager(quiet_logger()).package(tmp_path / "srv.tar.gz", output, extended=False)

    assert not output.exists()
    assert not part_path(output).exists()


def test_backing_device_picks_most_specific_mount():
    assert backing_device(Path("/mnt/backup/iso"), MOUNTS) == "/dev/sdc1"
    assert backing_device(Path("/mnt/backup/remote/x"), MOUNTS) == "backup@nas:/srv"
    assert backing_device(Path("/mnt/backupX"), MOUNTS) == "/dev/md1"


def test_proc_parsers(tmp_path):
    mounts = tmp_path / "mounts"
    mounts.write_text("/dev/sdc1 /mnt/my\\040backup ext4 rw 0 0\n", encoding="utf-8")
    swaps = tmp_path / "swaps"
    swaps.write_text(
        "Filename\tType\tSize\tUsed\tPriority\n/dev/md0  partition\t2096124\t0\t-2\n", encoding="utf-8"
    )

    assert read_mounts(mounts) == [("/dev/sdc1", "/mnt/my backup", "ext4")]
    assert read_swaps(swaps) == ["/dev/md0"]
    assert read_swaps(tmp_path / "absent") == []


def test_source_bytes_by_mode(tmp_path, monkeypatch):
    device = tmp_path / "md1"
    device.write_bytes(b"\x00" * 8192)
    source = SourceSpec(str(device))

    assert source_bytes(source, "disk", [], []) == 8192
    assert source_bytes(SourceSpec(str(device), "swap"), "filesystem", [], []) == SWAP_ESTIMATE_BYTES
    assert source_bytes(source, "filesystem", [], [str(device)]) == SWAP_ESTIMATE_BYTES
    assert source_bytes(source, "filesystem", [], []) == 8192
    monkeypatch.setattr(shutil, "disk_usage", lambda path: SimpleNamespace(total=100, used=42, free=58))
    assert source_bytes(source, "filesystem", [(str(device), str(tmp_path), "ext4")], []) == 42


def test_capture_commands(tmp_path, monkeypatch):
    commands = []
    monkeypatch.setattr(blockdev, "run_command", lambda cmd, logger, quiet=False: commands.append(cmd) or "")

    DdCapture(quiet_logger()).capture(SourceSpec("/dev/md0"), tmp_path / "md0.img")
    PartcloneCapture(quiet_logger()).capture(SourceSpec("/dev/md1", "ext4"), tmp_path / "md1.img")

    assert commands[0][:4] == ["nice", "-n", "10", "dd"]
    assert "if=/dev/md0" in commands[0] and "bs=4M" in commands[0]
    assert commands[1][3:] == ["partclone.ext4", "-c", "-s", "/dev/md1", "-O", str(tmp_path / "md1.img")]


def test_partclone_check_failure_is_false(tmp_path, monkeypatch):
    def failing(cmd, logger, quiet=False):
        raise ToolError(cmd, 1, "image corrompue")

    monkeypatch.setattr(blockdev, "run_command", failing)

    assert PartcloneCapture(quiet_logger()).check(tmp_path / "md1.img") is False


def test_sshfs_mount_command(tmp_path, monkeypatch):
    commands = []
    monkeypatch.setattr(sshfs, "run_command", lambda cmd, logger: commands.append(cmd))
    remote = RemoteMount("backup@nas:/srv/backup", 2222, ["allow_other", "reconnect"])

    sshfs.SshfsMountOperations(quiet_logger()).mount(remote, tmp_path)

    assert commands == [
        ["sshfs", "backup@nas:/srv/backup", str(tmp_path), "-p", "2222", "-o", "allow_other,reconnect"]
    ]


def test_toolchain_follows_mode(tmp_path):
    disk = build_toolchain(make_config(tmp_path, mode="disk"), quiet_logger())
    filesystem = build_toolchain(make_config(tmp_path, mode="filesystem"), quiet_logger())

    assert isinstance(disk.capture, DdCapture)
    assert isinstance(filesystem.capture, PartcloneCapture)
    assert disk.packager.volume_label == "SERVER_BACKUP"


def test_run_command_raises_tool_error(tmp_path):
    logger = build_logger("srv", tmp_path / "logs")

    with pytest.raises(ToolError) as excinfo:
        run_command(["sh", "-c", "echo boom >&2; exit 3"], logger=logger)

    assert excinfo.value.returncode == 3
    assert "boom" in str(excinfo.value)
    assert "boom" in (tmp_path / "logs" / "srv" / "backup.log").read_text(encoding="utf-8")

    with pytest.raises(ToolError):
        run_command(["commande-inexistante-isobackup"], logger=logger)


@pytest.mark.integration
def test_dd_capture_is_byte_exact(tmp_path):
    if shutil.which("dd") is None or shutil.which("nice") is None:
        pytest.skip("dd indisponible")
    device = tmp_path / "md0"
    device.write_bytes(bytes(range(256)) * 1024)
    image = tmp_path / "md0.img"

    DdCapture(quiet_logger()).capture(SourceSpec(str(device)), image)

    assert device_size(str(image)) == device_size(str(device))
    assert image.read_bytes() == device.read_bytes()


@pytest.mark.integration
@pytest.mark.skipif(shutil.which("genisoimage") is None, reason="genisoimage indisponible")
def test_genisoimage_produces_bootable_iso(tmp_path):
    payload = tmp_path / "srv.tar.gz"
    payload.write_bytes(b"\x1f\x8b" + b"\x00" * 4096)
    output = tmp_path / "srv.iso"

    GenisoimagePackager(quiet_logger(), "SRV").package(payload, output, extended=False)

    assert iso_signature_check(output) is None


def test_file_in_use_without_lsof_warns_and_proceeds(tmp_path, monkeypatch, caplog):
    monkeypatch.setattr(system.shutil, "which", lambda name: None)

    def unexpected(*args, **kwargs):
        raise AssertionError("lsof ne doit pas être lancé")

    monkeypatch.setattr(system.subprocess, "run", unexpected)

    with caplog.at_level("WARNING"):
        assert file_in_use(tmp_path / "server_backup.tar.gz", quiet_logger()) is False
    assert "lsof absent" in caplog.text


def test_file_in_use_reports_holders(tmp_path, monkeypatch):
    backup_dir = tmp_path / "server_backup"
    backup_dir.mkdir()
    archive = tmp_path / "server_backup.tar.gz"
    archive.write_bytes(b"x")
    commands = []
    holders = {str(archive): "COMMAND PID USER\ngzip 4242 root\n"}

    def fake_run(cmd, **kwargs):
        commands.append(cmd)
        stdout = holders.get(cmd[-1], "")
        return SimpleNamespace(returncode=0 if stdout else 1, stdout=stdout)

    monkeypatch.setattr(system.shutil, "which", lambda name: "/usr/bin/lsof")
    monkeypatch.setattr(system.subprocess, "run", fake_run)

    assert file_in_use(archive, quiet_logger()) is True
    assert file_in_use(backup_dir, quiet_logger()) is False
    assert commands == [["lsof", str(archive)], ["lsof", "+D", str(backup_dir)]]
