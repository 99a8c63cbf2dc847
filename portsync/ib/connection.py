"""
IB Connection Manager

Owns the single shared gateway session for the process.

Key Features:
- At most one ``GatewaySession`` object exists at any time
- Concurrent ``connect`` callers share one in-flight attempt
- Minimum spacing between successive connection attempts
- Bounded backoff retry for retryable failures; identity conflicts fail fast
- Idle watchdog tears the session down after 30 minutes without activity
- Teardown hooks let the request coordinator and subscription feed cancel
  their work before the session is released
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from eventkit import Event

from portsync.config.gateway_config import GatewayConfig
from portsync.config.settings import ConnectionSettings, get_connection_settings
from portsync.errors import (
    ConnectionTimeoutError,
    GatewayConnectionError,
    MaxRetriesExceededError,
    NotConnectedError,
    RetryConfig,
    TransportFailureError,
    retry_async,
)
from portsync.ib.gateway import GatewaySession
from portsync.logging import get_logger

logger = get_logger(__name__)

TeardownHook = Callable[[str], None]


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class IbConnectionManager:
    """
    Connection lifecycle for the shared gateway session.

    ``error_event(req_id, code, message)`` re-emits every gateway error of the
    current session so long-lived listeners (the throttle) attach once,
    independent of reconnects.
    """

    def __init__(
        self,
        session_factory: Callable[[], GatewaySession],
        settings: Optional[ConnectionSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self.settings = settings or get_connection_settings()
        self._clock = clock
        self._sleep = sleep

        self._session: Optional[GatewaySession] = None
        self._config: Optional[GatewayConfig] = None
        self.state = SessionState.DISCONNECTED

        self._connect_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._last_attempt_at: Optional[float] = None
        self.last_activity = self._clock()

        self._teardown_hooks: List[TeardownHook] = []
        self.error_event = Event("error")

        # Statistics
        self.connect_attempts = 0
        self.successful_connections = 0
        self.failed_connections = 0
        self.idle_disconnects = 0
        self.sessions_created = 0

    # --- lifecycle ---------------------------------------------------------

    async def connect(self, config: GatewayConfig) -> GatewaySession:
        """
        Return the live session, connecting if necessary.

        A no-op when already connected with ``config``. When an attempt is
        already underway, callers await that attempt instead of starting
        another.
        """
        if self._is_live() and self._config == config:
            self.touch()
            return self._session

        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.ensure_future(self._connect_with_retry(config))
        else:
            logger.debug("Connection attempt already in progress, awaiting it")

        return await asyncio.shield(self._connect_task)

    async def ensure_connected(self, config: GatewayConfig) -> GatewaySession:
        """Like ``connect`` but also recovers a session the gateway dropped."""
        if self._session is not None and not self._is_live() and self.state != SessionState.CONNECTING:
            logger.info("Gateway session is stale, reconnecting")
            self._release_session("stale session")
        return await self.connect(config)

    async def _connect_with_retry(self, config: GatewayConfig) -> GatewaySession:
        if self._session is not None and self._config != config:
            logger.info(f"Gateway config changed to {config}, replacing session")
            await self.disconnect("config changed")

        retry_config = RetryConfig(
            max_retries=self.settings.max_connect_attempts - 1,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
        )
        try:
            return await retry_async(
                lambda: self._attempt(config),
                is_retryable=lambda e: isinstance(e, GatewayConnectionError) and e.retryable,
                config=retry_config,
                sleep=self._sleep,
                description=f"Connect to {config}",
            )
        except MaxRetriesExceededError as e:
            logger.error(f"Giving up connecting to {config} after {e.attempts} attempts")
            if isinstance(e.last_error, GatewayConnectionError):
                raise e.last_error from e
            raise

    async def _attempt(self, config: GatewayConfig) -> GatewaySession:
        await self._respect_min_interval()
        self._last_attempt_at = self._clock()
        self.connect_attempts += 1

        if self._session is not None:
            self._release_session("replaced by new attempt")

        session = self._session_factory()
        self.sessions_created += 1
        self._session = session
        self.state = SessionState.CONNECTING
        logger.info(f"Connecting to IB at {config} (attempt {self.connect_attempts})")

        try:
            await session.connect(
                config.host, config.port, config.client_id, config.connect_timeout
            )
        except asyncio.CancelledError:
            self._release_session("connect cancelled")
            raise
        except GatewayConnectionError:
            self.failed_connections += 1
            self._release_session("connect failed")
            raise
        except asyncio.TimeoutError as e:
            self.failed_connections += 1
            self._release_session("connect timed out")
            raise ConnectionTimeoutError(config.host, config.port, config.connect_timeout) from e
        except OSError as e:
            self.failed_connections += 1
            self._release_session("transport error")
            raise TransportFailureError(
                f"Transport error connecting to {config}: {e}",
                details={"host": config.host, "port": config.port},
            ) from e

        session.disconnected_event += self._on_session_disconnected
        session.error_event += self._on_session_error
        self._config = config
        self.state = SessionState.CONNECTED
        self.successful_connections += 1
        self.touch()
        self._start_watchdog()

        logger.info(f"IB session established ({config})")
        return session

    async def _respect_min_interval(self) -> None:
        if self._last_attempt_at is None:
            return
        wait_time = self._last_attempt_at + self.settings.min_attempt_interval_seconds - self._clock()
        if wait_time > 0:
            logger.debug(f"Spacing connection attempts: waiting {wait_time:.2f}s")
            await self._sleep(wait_time)

    async def disconnect(self, reason: str = "requested") -> None:
        """
        Cancel requests and subscriptions, then release the session.

        Idempotent.
        """
        if self._connect_task is not None and not self._connect_task.done():
            if self._connect_task is not asyncio.current_task():
                self._connect_task.cancel()
        if self._session is None:
            self.state = SessionState.DISCONNECTED
            return

        logger.info(f"Disconnecting IB session ({reason})")
        self._run_teardown_hooks(reason)
        self._stop_watchdog()
        self._release_session(reason)

    def _release_session(self, reason: str) -> None:
        session = self._session
        self._session = None
        self.state = SessionState.DISCONNECTED
        if session is None:
            return
        session.disconnected_event -= self._on_session_disconnected
        session.error_event -= self._on_session_error
        if session.is_connected():
            session.disconnect()
        logger.debug(f"Gateway session released ({reason})")

    def _on_session_disconnected(self) -> None:
        logger.warning("Gateway closed the session")
        self._run_teardown_hooks("session lost")
        self._stop_watchdog()
        self._release_session("gateway disconnected")

    def _on_session_error(self, req_id: int, code: int, message: str) -> None:
        self.error_event.emit(req_id, code, message)

    # --- teardown hooks ----------------------------------------------------

    def add_teardown_hook(self, hook: TeardownHook) -> None:
        """Register a callback run (with the reason) before the session is released."""
        if hook not in self._teardown_hooks:
            self._teardown_hooks.append(hook)

    def _run_teardown_hooks(self, reason: str) -> None:
        for hook in list(self._teardown_hooks):
            try:
                hook(reason)
            except Exception as e:
                logger.error(f"Teardown hook {hook!r} failed: {e}")

    # --- keep-alive --------------------------------------------------------

    def touch(self) -> None:
        """Record activity on the session."""
        self.last_activity = self._clock()

    def _start_watchdog(self) -> None:
        self._stop_watchdog()
        self._watchdog_task = asyncio.ensure_future(self._idle_watchdog())

    def _stop_watchdog(self) -> None:
        task = self._watchdog_task
        self._watchdog_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _idle_watchdog(self) -> None:
        while self._session is not None:
            await self._sleep(self.settings.watchdog_interval_seconds)
            if self._session is None:
                return
            idle_for = self._clock() - self.last_activity
            if idle_for >= self.settings.idle_timeout_seconds:
                logger.info(
                    f"IB session idle for {idle_for:.0f}s "
                    f"(limit {self.settings.idle_timeout_seconds:.0f}s), disconnecting"
                )
                self.idle_disconnects += 1
                await self.disconnect("idle timeout")
                return

    # --- accessors ---------------------------------------------------------

    def _is_live(self) -> bool:
        return (
            self.state == SessionState.CONNECTED
            and self._session is not None
            and self._session.is_connected()
        )

    def is_connected(self) -> bool:
        return self._is_live()

    def get_session(self, operation: str = "") -> GatewaySession:
        """Return the live session or raise ``NotConnectedError``."""
        if not self._is_live():
            raise NotConnectedError(operation)
        return self._session

    @property
    def config(self) -> Optional[GatewayConfig]:
        return self._config

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "connected": self._is_live(),
            "host": self._config.host if self._config else None,
            "port": self._config.port if self._config else None,
            "client_id": self._config.client_id if self._config else None,
            "seconds_since_activity": self._clock() - self.last_activity,
            "idle_timeout": self.settings.idle_timeout_seconds,
            "connect_attempts": self.connect_attempts,
            "successful_connections": self.successful_connections,
            "failed_connections": self.failed_connections,
            "idle_disconnects": self.idle_disconnects,
            "sessions_created": self.sessions_created,
        }

    def __str__(self) -> str:
        return f"IbConnectionManager(state={self.state.value}, config={self._config})"

    def __repr__(self) -> str:
        return (
            f"IbConnectionManager(state={self.state.value}, config={self._config!r}, "
            f"sessions_created={self.sessions_created})"
        )
