"""Connector registry.

Keeps exactly one live connector per enabled connector key and none for
disabled keys. Desired state is read from ``user_channels`` on a fixed
interval; each pass starts what is missing, stops what was disabled and
replaces connectors that died or silently lost their session.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable

import httpx
import structlog

from chatrelay.channels.base import Connector, ConnectorKey, ConnectorState, ConnectorStatus
from chatrelay.channels.discord import DiscordConnector
from chatrelay.channels.slack import SlackConnector
from chatrelay.channels.telegram import TelegramConnector
from chatrelay.channels.whatsapp import WhatsAppConnector
from chatrelay.config import ChannelDefaults, RegistryConfig
from chatrelay.db.engine import ChannelRow, Database
from chatrelay.pipeline import Pipeline

logger = structlog.get_logger()

ConnectorFactory = Callable[[ConnectorKey, ChannelRow], Connector | None]


def connector_class_for(channel_type: str) -> type[Connector] | None:
    """Map a channel type to its connector class; unknown types get None."""
    match (channel_type or "").strip().lower():
        case "telegram":
            return TelegramConnector
        case "whatsapp":
            return WhatsAppConnector
        case "discord":
            return DiscordConnector
        case "slack":
            return SlackConnector
        case _:
            return None


class ConnectorRegistry:
    """Owns the live connector map and its reconciliation loop."""

    def __init__(
        self,
        db: Database,
        pipeline: Pipeline,
        config: RegistryConfig | None = None,
        defaults: ChannelDefaults | None = None,
        *,
        connector_factory: ConnectorFactory | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.db = db
        self.pipeline = pipeline
        self.config = config or RegistryConfig()
        self.defaults = defaults or ChannelDefaults()
        self._factory = connector_factory or self._build_connector
        self._http_transport = http_transport
        self._clock = clock

        self.connectors: dict[ConnectorKey, Connector] = {}
        self._lock = asyncio.Lock()
        self._poll_task: asyncio.Task[None] | None = None
        self._announced: set[ConnectorKey] = set()
        self._last_start: dict[ConnectorKey, float] = {}

    def _build_connector(self, key: ConnectorKey, row: ChannelRow) -> Connector | None:
        cls = connector_class_for(key.channel_type)
        if cls is None:
            return None
        return cls(
            key,
            row.config,
            pipeline=self.pipeline,
            db=self.db,
            defaults=self.defaults,
            http_transport=self._http_transport,
        )

    # ── Reconciliation ──────────────────────────────────────────────

    async def reconcile(self, desired: list[ChannelRow]) -> None:
        """Bring the live map in line with the enabled channel rows."""
        async with self._lock:
            wanted: dict[ConnectorKey, ChannelRow] = {}
            for row in desired:
                key = ConnectorKey(row.account_id, row.channel_type, row.connection_mode)
                wanted[key] = row

            for key in [k for k in self.connectors if k not in wanted]:
                logger.info("channels.registry.disabled", key=str(key))
                await self._stop_key(key)
                self._last_start.pop(key, None)

            for key, row in wanted.items():
                existing = self.connectors.get(key)
                if existing is not None:
                    if existing.state in (ConnectorState.FAULTED, ConnectorState.STOPPED):
                        logger.warning(
                            "channels.registry.replacing_dead",
                            key=str(key),
                            state=existing.state.value,
                            error=existing.last_error,
                        )
                    elif self._is_stale(existing):
                        if not self._cooldown_elapsed(key):
                            logger.debug("channels.registry.stale_cooldown", key=str(key))
                            continue
                        logger.warning("channels.registry.stale_restart", key=str(key))
                    else:
                        continue
                    await self._stop_key(key)

                await self._start_key(key, row)

    def _is_stale(self, connector: Connector) -> bool:
        return (
            connector.uses_session
            and connector.state is ConnectorState.RUNNING
            and not connector.has_session
            and not connector.is_connecting
            and not connector.uses_alternate_transport
        )

    def _cooldown_elapsed(self, key: ConnectorKey) -> bool:
        last = self._last_start.get(key)
        if last is None:
            return True
        return self._clock() - last >= self.config.restart_cooldown_s

    async def _start_key(self, key: ConnectorKey, row: ChannelRow) -> None:
        connector = self._factory(key, row)
        if connector is None:
            if row.config and key not in self._announced:
                self._announced.add(key)
                logger.info(
                    "channels.registry.unsupported_type",
                    key=str(key),
                    channel_type=key.channel_type,
                )
            return

        self._last_start[key] = self._clock()
        try:
            await connector.start()
        except Exception as e:
            logger.error("channels.registry.start_failed", key=str(key), error=str(e))
            return
        self.connectors[key] = connector
        logger.info("channels.registry.started", key=str(key))

    async def _stop_key(self, key: ConnectorKey) -> None:
        connector = self.connectors.pop(key, None)
        if connector is None:
            return
        try:
            await asyncio.wait_for(connector.stop(), timeout=self.config.stop_timeout_s)
        except TimeoutError:
            logger.warning("channels.registry.stop_timeout", key=str(key))
        except Exception as e:
            logger.warning("channels.registry.stop_failed", key=str(key), error=str(e))

    async def sync_from_db(self) -> None:
        """One reconciliation pass against the stored channel rows."""
        await self.reconcile(await self.db.find_enabled_channels())

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Run the first pass, then keep reconciling on an interval."""
        try:
            await self.sync_from_db()
        except Exception as e:
            logger.error("channels.registry.initial_sync_failed", error=str(e))
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop(), name="connector-registry-poll")
        logger.info(
            "channels.registry.polling",
            interval_s=self.config.poll_interval_s,
            live=len(self.connectors),
        )

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.poll_interval_s)
            try:
                await self.sync_from_db()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("channels.registry.poll_failed", error=str(e))

    async def stop(self, key: ConnectorKey) -> None:
        async with self._lock:
            await self._stop_key(key)

    async def stop_all(self) -> None:
        """Stop every connector in parallel; one failure does not block the rest."""
        async with self._lock:
            keys = list(self.connectors)
            results = await asyncio.gather(
                *(self._stop_key(key) for key in keys),
                return_exceptions=True,
            )
            for key, result in zip(keys, results):
                if isinstance(result, BaseException):
                    logger.warning("channels.registry.stop_failed", key=str(key), error=str(result))
            self.connectors.clear()

    async def shutdown(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.stop_all()
        logger.info("channels.registry.shutdown")

    # ── Lookup ──────────────────────────────────────────────────────

    def get(self, key: ConnectorKey) -> Connector | None:
        return self.connectors.get(key)

    def find(
        self,
        account_id: str,
        channel_type: str,
        where: Callable[[Connector], bool] | None = None,
    ) -> Connector | None:
        """First live connector for an account and channel type that ``where`` accepts."""
        for key, connector in self.connectors.items():
            if key.account_id != account_id or key.channel_type != channel_type:
                continue
            if where is None or where(connector):
                return connector
        return None

    def statuses(self) -> list[ConnectorStatus]:
        return [connector.status() for connector in self.connectors.values()]
