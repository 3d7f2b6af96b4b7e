"""Stage registry keyed by stage name."""

from __future__ import annotations

from typing import Dict

from feedcast.apps.worker.queues import StageName
from feedcast.apps.worker.stages.base import Stage, StageContext, StageResult, worker_context
from feedcast.apps.worker.stages.podcast import PodcastStage
from feedcast.apps.worker.stages.script import ScriptStage
from feedcast.apps.worker.stages.summary import SummaryStage

STAGES: Dict[StageName, Stage] = {
    StageName.SUMMARY: SummaryStage(),
    StageName.SCRIPT: ScriptStage(),
    StageName.PODCAST: PodcastStage(),
}

__all__ = [
    "PodcastStage",
    "STAGES",
    "ScriptStage",
    "Stage",
    "StageContext",
    "StageResult",
    "SummaryStage",
    "worker_context",
]
