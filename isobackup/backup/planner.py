from __future__ import annotations

import logging
from typing import List, Optional

from isobackup.backup.integrity import ArtifactVerifier
from isobackup.backup.models import PRODUCING_STAGES, PipelineStage, PlannedStage, RunContext, StageAction


def plan(context: RunContext, verifier: ArtifactVerifier, logger: logging.Logger) -> List[PlannedStage]:
    """Décide, à partir des artefacts présents sur le sink, quelles étapes rejouer.

    Les étapes productrices sont examinées de la plus récente à la plus
    ancienne : le premier artefact valide rencontré couvre toutes les étapes
    qui le précèdent, sans même les examiner. Tout ce qui suit est rejoué.
    """

    valid_stage: Optional[PipelineStage] = None
    for stage in reversed(PRODUCING_STAGES):
        if _stage_satisfied(context, stage, verifier):
            valid_stage = stage
            break

    if valid_stage is not None and valid_stage > PipelineStage.CAPTURE:
        logger.warning(
            "Capture ignorée grâce à l'artefact valide de l'étape %s : sa correspondance avec l'état actuel "
            "des disques n'est pas vérifiée",
            valid_stage.name,
        )

    planned: List[PlannedStage] = []
    for stage in PipelineStage:
        if stage not in PRODUCING_STAGES:
            planned.append(PlannedStage(stage, StageAction.RUN))
        elif valid_stage is not None and stage == valid_stage:
            planned.append(PlannedStage(stage, StageAction.SKIP, "artefact présent et vérifié"))
        elif valid_stage is not None and stage < valid_stage:
            planned.append(PlannedStage(stage, StageAction.SKIP, f"couvert par l'artefact de {valid_stage.name}"))
        else:
            planned.append(PlannedStage(stage, StageAction.RUN, "artefact absent ou invalide"))

    for entry in planned:
        logger.info("Plan: %s -> %s %s", entry.stage.name, entry.action.value, entry.reason)
    return planned


def _stage_satisfied(context: RunContext, stage: PipelineStage, verifier: ArtifactVerifier) -> bool:
    expected = context.expected_artifacts(stage)
    if not expected:
        return False

    satisfied = True
    # on vérifie tout (pas de court-circuit) pour garder les images déjà valides d'une capture partielle
    for artifact in expected:
        if verifier.verify(artifact):
            context.record(stage, artifact)
        else:
            context.discard(stage, artifact.path)
            satisfied = False
    return satisfied


def stages_to_run(planned: List[PlannedStage]) -> List[PipelineStage]:
    return [entry.stage for entry in planned if entry.action == StageAction.RUN]
