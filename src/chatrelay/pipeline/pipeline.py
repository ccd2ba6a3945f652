"""Ordered, fixed chain of message-processing stages."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Sequence

import structlog

from chatrelay.errors import ConfigurationError, PipelineStageError
from chatrelay.pipeline.models import PipelineContext, PipelineRequest, PipelineResult

logger = structlog.get_logger()


class Stage(ABC):
    """One step of the pipeline.

    ``process`` does its work on the context and returns True to hand off
    to the next stage, or False to end the run early without an error.
    """

    name: str = "stage"

    @abstractmethod
    async def process(self, ctx: PipelineContext) -> bool:
        ...


class Pipeline:
    """Runs every stage in order against one context per message."""

    def __init__(self, stages: Sequence[Stage]) -> None:
        self.stages = tuple(stages)

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    async def run(self, request: PipelineRequest) -> PipelineResult:
        """Process one message. Raises ConfigurationError or PipelineStageError."""
        ctx = PipelineContext.from_request(request)
        completed = True

        for stage in self.stages:
            try:
                proceed = await stage.process(ctx)
            except ConfigurationError:
                logger.warning(
                    "pipeline.stage.config_error",
                    stage=stage.name,
                    account_id=ctx.account_id,
                    channel_type=ctx.channel_type,
                )
                raise
            except Exception as e:
                logger.error(
                    "pipeline.stage.failed",
                    stage=stage.name,
                    account_id=ctx.account_id,
                    channel_type=ctx.channel_type,
                    conversation_id=ctx.conversation_id,
                    error=str(e),
                    exc_info=True,
                )
                raise PipelineStageError(stage.name, e) from e
            if not proceed:
                completed = False
                logger.info("pipeline.halted", stage=stage.name, conversation_id=ctx.conversation_id)
                break

        elapsed_ms = int((time.monotonic() - ctx.received_at) * 1000)
        logger.info(
            "pipeline.complete",
            conversation_id=ctx.conversation_id,
            provider=ctx.provider,
            tools_used=ctx.tools_used,
            completed=completed,
            elapsed_ms=elapsed_ms,
        )
        return PipelineResult(
            reply=ctx.reply,
            tools_used=list(ctx.tools_used),
            conversation_id=ctx.conversation_id,
            completed=completed,
            elapsed_ms=elapsed_ms,
        )
