"""Middleware message pipeline."""

from chatrelay.pipeline.models import PipelineContext, PipelineRequest, PipelineResult
from chatrelay.pipeline.pipeline import Pipeline, Stage
from chatrelay.pipeline.stages import (
    AIRoutingStage,
    HistoryStage,
    SessionStage,
    StoreStage,
    build_pipeline,
)

__all__ = [
    "AIRoutingStage",
    "HistoryStage",
    "Pipeline",
    "PipelineContext",
    "PipelineRequest",
    "PipelineResult",
    "SessionStage",
    "Stage",
    "StoreStage",
    "build_pipeline",
]
