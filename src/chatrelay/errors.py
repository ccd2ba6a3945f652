"""Error taxonomy shared by connectors, the pipeline and providers."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigurationError(RelayError):
    """A credential or channel setting the account needs is missing.

    Never retried automatically. ``user_message`` is safe to show to the
    end user and tells them how to fix it.
    """

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider

    @property
    def user_message(self) -> str:
        if self.provider:
            return (
                f"No API key configured for {self.provider}. "
                "Add one in the dashboard Settings."
            )
        return "This channel is not fully configured yet. Check the dashboard Settings."


class ConnectorError(RelayError, ConnectionError):
    """A connector failed to establish or lost its platform session."""


class DeliveryRejectedError(ConnectorError):
    """The platform refused an outbound message (e.g. malformed markup)."""


class ToolExecutionError(RelayError):
    """A tool failed while running inside a tool-calling round."""


class PipelineStageError(RelayError):
    """A pipeline stage raised; the rest of the chain was skipped."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"Stage '{stage}' failed: {type(cause).__name__}: {cause}")
        self.stage = stage
        self.cause = cause
