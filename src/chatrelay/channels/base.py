"""Core connector abstractions.

A connector owns one live platform session for one connector key. It turns
platform events into pipeline runs and pipeline replies into platform
sends. Lifecycle: STOPPED → STARTING → RUNNING → (STOPPING → STOPPED |
FAULTED → STOPPED).
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from abc import ABC, abstractmethod
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar

import httpx
import structlog
import websockets

from chatrelay.config import ChannelDefaults
from chatrelay.db.engine import Database
from chatrelay.errors import ConfigurationError, ConnectorError, DeliveryRejectedError
from chatrelay.logging import bind_connector
from chatrelay.pipeline import Pipeline, PipelineRequest

logger = structlog.get_logger()

GENERIC_APOLOGY = "Sorry, something went wrong. Please try again."


class FatalSessionError(ConnectorError):
    """The platform ended the session in a way reconnecting cannot fix."""


class ConnectorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAULTED = "faulted"


@dataclass(frozen=True)
class ConnectorKey:
    """(account, channel type, connection mode): one live connection."""

    account_id: str
    channel_type: str
    connection_mode: str = "business"

    def __str__(self) -> str:
        return f"{self.account_id}:{self.channel_type}:{self.connection_mode}"


@dataclass
class InboundMessage:
    """Normalized inbound message extracted from a platform event."""

    peer: str
    text: str
    reply_to_id: str | None = None
    sender_id: str | None = None


@dataclass
class ConnectorStatus:
    """Runtime status snapshot for a connector."""

    key: str
    channel_type: str
    state: str
    healthy: bool
    has_session: bool | None = None
    last_error: str | None = None
    last_inbound_at: str | None = None
    last_outbound_at: str | None = None


def chunk_text(text: str, limit: int) -> list[str]:
    """Split text into pieces of at most ``limit`` chars, preferring line breaks."""
    content = (text or "").strip() or "(empty response)"
    if len(content) <= limit:
        return [content]

    chunks: list[str] = []
    start = 0
    while start < len(content):
        end = min(start + limit, len(content))
        if end < len(content):
            cut = content.rfind("\n", start, end)
            if cut > start + limit // 2:
                end = cut + 1
        chunks.append(content[start:end])
        start = end
    return chunks


def reconnect_backoff(
    attempt: int,
    *,
    base_seconds: float = 1.0,
    max_seconds: float = 30.0,
    rand_float=random.random,
) -> float:
    """Jittered exponential backoff, capped at ``max_seconds``."""
    attempt = max(attempt, 0)
    if base_seconds <= 0.0 or max_seconds <= 0.0:
        return 0.0
    scaled = base_seconds * (2 ** min(attempt, 16))
    jitter_factor = 0.8 + (0.4 * min(max(rand_float(), 0.0), 1.0))
    return min(max_seconds, scaled * jitter_factor)


def close_code(exc: BaseException) -> int | None:
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    received = getattr(exc, "rcvd", None)
    received_code = getattr(received, "code", None)
    if isinstance(received_code, int):
        return received_code
    return None


class Connector(ABC):
    """Interface and shared behaviour for all platform connectors."""

    channel_type: ClassVar[str] = "generic"
    display_name: ClassVar[str] = "Messenger"
    max_message_chars: ClassVar[int] = 4000
    uses_session: ClassVar[bool] = False

    def __init__(
        self,
        key: ConnectorKey,
        config: dict[str, Any],
        *,
        pipeline: Pipeline,
        db: Database | None = None,
        defaults: ChannelDefaults | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.key = key
        self.raw_config = dict(config or {})
        self.pipeline = pipeline
        self.db = db
        self.defaults = defaults or ChannelDefaults()
        self._http_transport = http_transport

        self.state = ConnectorState.STOPPED
        self.last_error: str | None = None
        self.last_inbound_at: str | None = None
        self.last_outbound_at: str | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._log = logger.bind(connector=str(key), channel=self.channel_type)

    # ── Platform hooks ──────────────────────────────────────────────

    @abstractmethod
    async def _open(self) -> None:
        """Establish the platform session. Raise on failure."""
        ...

    @abstractmethod
    async def _close(self) -> None:
        """Release everything ``_open`` acquired. Must tolerate partial state."""
        ...

    @abstractmethod
    async def _deliver(
        self,
        peer: str,
        text: str,
        *,
        reply_to: str | None,
        formatted: bool,
    ) -> None:
        """Send one chunk. Raise DeliveryRejectedError when the platform refuses it."""
        ...

    async def _typing(self, peer: str) -> None:
        """Show an in-progress indicator; platforms without one do nothing."""
        return None

    # ── Lifecycle ───────────────────────────────────────────────────

    @property
    def has_session(self) -> bool:
        return self.state is ConnectorState.RUNNING

    @property
    def is_connecting(self) -> bool:
        return self.state is ConnectorState.STARTING

    @property
    def uses_alternate_transport(self) -> bool:
        """True when stale-session detection must not restart this connector."""
        return False

    @property
    def is_healthy(self) -> bool:
        return self.state is ConnectorState.RUNNING

    async def start(self) -> None:
        """Open the session; on failure everything opened so far is released."""
        if self.state in (ConnectorState.STARTING, ConnectorState.RUNNING):
            return
        self._set_state(ConnectorState.STARTING)
        try:
            await self._open()
        except Exception as e:
            self.last_error = str(e) or type(e).__name__
            self._set_state(ConnectorState.FAULTED)
            try:
                await self._close()
            except Exception as close_err:
                self._log.warning("connector.cleanup_failed", error=str(close_err))
            self._set_state(ConnectorState.STOPPED)
            self.record_event("start_failed", {"error": self.last_error})
            if isinstance(e, ConnectorError):
                raise
            raise ConnectorError(f"{self.channel_type} start failed: {self.last_error}") from e

        self._set_state(ConnectorState.RUNNING)
        self.record_event("started")

    async def stop(self) -> None:
        """Close the session and cancel timers. Safe to call repeatedly."""
        if self.state is ConnectorState.STOPPED:
            return
        self._set_state(ConnectorState.STOPPING)
        try:
            await self._close()
        finally:
            for task in list(self._background):
                task.cancel()
            self._background.clear()
            self._set_state(ConnectorState.STOPPED)
        self.record_event("stopped")

    def mark_faulted(self, reason: str) -> None:
        """Session died for good; the registry will replace this connector."""
        self.last_error = reason
        self._set_state(ConnectorState.FAULTED)
        self.record_event("faulted", {"error": reason})

    def status(self) -> ConnectorStatus:
        return ConnectorStatus(
            key=str(self.key),
            channel_type=self.channel_type,
            state=self.state.value,
            healthy=self.is_healthy,
            has_session=self.has_session if self.uses_session else None,
            last_error=self.last_error,
            last_inbound_at=self.last_inbound_at,
            last_outbound_at=self.last_outbound_at,
        )

    # ── Messaging ───────────────────────────────────────────────────

    async def send_reply(self, peer: str, text: str, reply_to: str | None = None) -> None:
        """Deliver text in platform-sized chunks, retrying once without formatting."""
        for idx, chunk in enumerate(chunk_text(text, self.max_message_chars)):
            target = reply_to if idx == 0 else None
            try:
                await self._deliver(peer, chunk, reply_to=target, formatted=True)
            except DeliveryRejectedError as e:
                self._log.warning("connector.send_rejected_retry_plain", error=str(e))
                await self._deliver(peer, chunk, reply_to=target, formatted=False)
        self.last_outbound_at = _now_iso()

    async def handle_inbound(self, message: InboundMessage) -> None:
        """Run the pipeline once for a message; failures become apology replies."""
        with bind_connector(self.key):
            await self._handle_inbound(message)

    async def _handle_inbound(self, message: InboundMessage) -> None:
        self.last_inbound_at = _now_iso()
        self.show_typing(message.peer)

        request = PipelineRequest(
            account_id=self.key.account_id,
            channel_type=self.channel_type,
            peer=message.peer,
            text=message.text,
            channel_name=self.display_name,
            on_tool_round_start=lambda: self.show_typing(message.peer),
        )
        try:
            result = await self.pipeline.run(request)
            reply = result.reply
        except ConfigurationError as e:
            self._log.warning("connector.inbound.not_configured", error=str(e))
            reply = e.user_message
        except Exception as e:
            self._log.error("connector.inbound.failed", peer=message.peer, error=str(e))
            reply = GENERIC_APOLOGY

        if not reply:
            return
        try:
            await self.send_reply(message.peer, reply, reply_to=message.reply_to_id)
        except Exception as e:
            self.last_error = str(e)
            self._log.error("connector.reply_failed", peer=message.peer, error=str(e))

    def dispatch_inbound(self, message: InboundMessage) -> asyncio.Task[None]:
        """Handle a message concurrently with others (socket-based platforms)."""
        return self.spawn(self.handle_inbound(message), name=f"inbound-{self.key}")

    def show_typing(self, peer: str) -> None:
        """Detached, error-swallowing typing indicator."""
        self.spawn(self._typing(peer), name=f"typing-{self.key}")

    def record_event(self, event_type: str, payload: dict[str, Any] | None = None) -> None:
        """Best-effort write to channel_events."""
        if self.db is None:
            return
        self.spawn(
            self.db.channel_event_add(
                self.key.account_id,
                self.channel_type,
                event_type,
                payload,
            ),
            name=f"event-{event_type}",
        )

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.debug("connector.background_failed", task=task.get_name(), error=str(exc))

    def _http_client(self, **kwargs: Any) -> httpx.AsyncClient:
        kwargs.setdefault("timeout", self.defaults.request_timeout_s)
        return httpx.AsyncClient(transport=self._http_transport, **kwargs)

    def _set_state(self, state: ConnectorState) -> None:
        if state is not self.state:
            self._log.info("connector.state", previous=self.state.value, state=state.value)
        self.state = state


class SessionConnector(Connector):
    """Connector whose platform session is a long-lived websocket.

    The session loop reconnects on its own with backoff. ``has_session``
    and ``is_connecting`` let the registry spot a connector whose loop has
    died without the connector noticing.
    """

    uses_session: ClassVar[bool] = True

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._socket: Any = None
        self._connecting = False
        self._stopping = False
        self._session_task: asyncio.Task[None] | None = None

    @abstractmethod
    async def _prepare(self) -> None:
        """Validate credentials / open HTTP clients before the first connect."""
        ...

    @abstractmethod
    async def _session_url(self) -> str:
        ...

    @abstractmethod
    async def _run_session(self, ws: Any) -> None:
        """Serve one connected socket until it closes. Return to reconnect."""
        ...

    async def _teardown(self) -> None:
        """Release what ``_prepare`` opened."""
        return None

    @property
    def has_session(self) -> bool:
        return self._socket is not None

    @property
    def is_connecting(self) -> bool:
        return self._connecting

    @property
    def is_healthy(self) -> bool:
        return self.state is ConnectorState.RUNNING and (self.has_session or self.is_connecting)

    async def _open(self) -> None:
        await self._prepare()
        self._stopping = False
        self._connecting = True
        self._session_task = asyncio.create_task(
            self._session_loop(),
            name=f"session-{self.key}",
        )

    async def _close(self) -> None:
        self._stopping = True
        socket, self._socket = self._socket, None
        if socket is not None:
            with contextlib.suppress(Exception):
                await socket.close()
        task, self._session_task = self._session_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._connecting = False
        await self._teardown()

    def _connect(self, url: str) -> Any:
        return websockets.connect(
            url,
            open_timeout=self.defaults.request_timeout_s,
            max_size=2**22,
        )

    async def _session_loop(self) -> None:
        attempt = 0
        while not self._stopping:
            self._connecting = True
            try:
                url = await self._session_url()
                async with self._connect(url) as ws:
                    self._socket = ws
                    self._connecting = False
                    attempt = 0
                    self._log.info("connector.session.open")
                    await self._run_session(ws)
            except asyncio.CancelledError:
                raise
            except FatalSessionError as e:
                self._socket = None
                self._connecting = False
                self._log.error("connector.session.fatal", error=str(e))
                self.mark_faulted(str(e))
                return
            except Exception as e:
                self.last_error = str(e) or type(e).__name__
                self._log.warning(
                    "connector.session.lost",
                    error=self.last_error,
                    close_code=close_code(e),
                )
            finally:
                self._socket = None

            if self._stopping:
                break
            # Waiting out the backoff counts as connecting, not as a lost session.
            self._connecting = True
            delay = reconnect_backoff(
                attempt,
                base_seconds=self.defaults.reconnect_base_s,
                max_seconds=self.defaults.reconnect_max_s,
            )
            attempt += 1
            self._log.info("connector.session.reconnecting", attempt=attempt, delay=round(delay, 2))
            await asyncio.sleep(delay)
        self._connecting = False


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()
