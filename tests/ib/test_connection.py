"""
Tests for the IB connection manager.

The fake gateway factory records every session it creates so the
single-session invariant can be checked at each creation.
"""

import asyncio

import pytest

from portsync.config.gateway_config import GatewayConfig
from portsync.config.settings import ConnectionSettings
from portsync.errors import (
    ConnectionTimeoutError,
    IdentityConflictError,
    NotConnectedError,
    TransportFailureError,
)
from portsync.ib.connection import IbConnectionManager, SessionState
from tests.conftest import FakeGatewayFactory


class SingleSessionFactory(FakeGatewayFactory):
    """Flags any session created while another one is still live."""

    def __init__(self, script):
        super().__init__(script)
        self.violations = 0

    def __call__(self):
        if self.live_sessions:
            self.violations += 1
        return super().__call__()


class TestConnect:
    async def test_connect_creates_one_session(self, connection, session_factory, gateway_config):
        session = await connection.connect(gateway_config)

        assert connection.is_connected()
        assert connection.state == SessionState.CONNECTED
        assert connection.get_session() is session
        assert connection.config == gateway_config
        assert connection.sessions_created == 1

    async def test_connect_is_noop_when_connected(self, connection, gateway_config):
        first = await connection.connect(gateway_config)
        second = await connection.connect(gateway_config)

        assert first is second
        assert connection.sessions_created == 1

    async def test_concurrent_connects_share_one_attempt(
        self, connection, gateway_script, gateway_config
    ):
        gateway_script.connect_delay = 0.05

        sessions = await asyncio.gather(*(connection.connect(gateway_config) for _ in range(5)))

        assert len({id(s) for s in sessions}) == 1
        assert gateway_script.connect_calls == 1
        assert connection.sessions_created == 1

    async def test_single_session_across_connect_disconnect_sequences(
        self, gateway_script, connection_settings, gateway_config
    ):
        factory = SingleSessionFactory(gateway_script)
        manager = IbConnectionManager(factory, settings=connection_settings)
        other = GatewayConfig(client_id=8, account_code="DU123")
        try:
            await manager.connect(gateway_config)
            await manager.disconnect()
            await asyncio.gather(manager.connect(gateway_config), manager.connect(gateway_config))
            await manager.connect(other)
            factory.sessions[-1].drop()
            await manager.ensure_connected(gateway_config)
            await manager.disconnect()
            await manager.connect(other)

            assert factory.violations == 0
            assert len(factory.live_sessions) == 1
        finally:
            await manager.disconnect()
        assert factory.live_sessions == []

    async def test_config_change_replaces_session(self, connection, session_factory, gateway_config):
        await connection.connect(gateway_config)
        new_config = GatewayConfig(host="127.0.0.1", port=4002, client_id=9)

        await connection.connect(new_config)

        assert connection.sessions_created == 2
        assert connection.config == new_config
        assert not session_factory.sessions[0].is_connected()


class TestConnectFailures:
    async def test_identity_conflict_fails_fast(self, connection, gateway_script, gateway_config):
        gateway_script.connect_errors = [IdentityConflictError(7), IdentityConflictError(7)]

        with pytest.raises(IdentityConflictError):
            await connection.connect(gateway_config)

        assert gateway_script.connect_calls == 1
        assert not connection.is_connected()

    async def test_retryable_failures_are_retried(self, connection, gateway_script, gateway_config):
        gateway_script.connect_errors = [
            ConnectionTimeoutError("127.0.0.1", 4002, 20.0),
            TransportFailureError("connection refused"),
        ]

        await connection.connect(gateway_config)

        assert gateway_script.connect_calls == 3
        assert connection.is_connected()
        assert connection.failed_connections == 2
        assert connection.successful_connections == 1

    async def test_gives_up_after_max_attempts(self, connection, gateway_script, gateway_config):
        gateway_script.connect_errors = [TransportFailureError("refused") for _ in range(5)]

        with pytest.raises(TransportFailureError):
            await connection.connect(gateway_config)

        assert gateway_script.connect_calls == 3
        assert not connection.is_connected()

    async def test_socket_error_becomes_transport_failure(
        self, connection, gateway_script, gateway_config
    ):
        gateway_script.connect_errors = [ConnectionRefusedError("refused") for _ in range(3)]

        with pytest.raises(TransportFailureError):
            await connection.connect(gateway_config)

    async def test_timeout_becomes_connection_timeout(self, connection, gateway_script, gateway_config):
        gateway_script.connect_errors = [asyncio.TimeoutError() for _ in range(3)]

        with pytest.raises(ConnectionTimeoutError) as exc_info:
            await connection.connect(gateway_config)
        assert exc_info.value.details["port"] == 4002

    async def test_attempts_are_spaced(self, gateway_script, session_factory, fake_clock, gateway_config):
        settings = ConnectionSettings(
            min_attempt_interval_seconds=2.0,
            retry_base_delay=0.01,
            retry_max_delay=0.02,
        )
        gateway_script.connect_errors = [TransportFailureError("refused")]
        manager = IbConnectionManager(
            session_factory, settings=settings, clock=fake_clock, sleep=fake_clock.sleep
        )
        try:
            await manager.connect(gateway_config)
        finally:
            await manager.disconnect()

        assert any(1.9 < s <= 2.0 for s in fake_clock.sleeps)


class TestSessionLifecycle:
    async def test_get_session_requires_connection(self, connection):
        with pytest.raises(NotConnectedError):
            connection.get_session("contract details")

    async def test_disconnect_is_idempotent(self, connection, gateway_script, gateway_config):
        await connection.connect(gateway_config)

        await connection.disconnect()
        await connection.disconnect()

        assert gateway_script.disconnects == 1
        assert connection.state == SessionState.DISCONNECTED

    async def test_teardown_hooks_run_with_reason(self, connection, gateway_config):
        reasons = []
        connection.add_teardown_hook(reasons.append)
        await connection.connect(gateway_config)

        await connection.disconnect("operator")

        assert reasons == ["operator"]

    async def test_gateway_drop_releases_session(self, connection, session_factory, gateway_config):
        reasons = []
        connection.add_teardown_hook(reasons.append)
        await connection.connect(gateway_config)

        session_factory.sessions[0].drop()

        assert not connection.is_connected()
        assert reasons == ["session lost"]

        await connection.ensure_connected(gateway_config)
        assert connection.is_connected()
        assert connection.sessions_created == 2

    async def test_session_errors_are_forwarded(self, connection, session_factory, gateway_config):
        received = []
        connection.error_event += lambda req_id, code, msg: received.append((req_id, code))
        await connection.connect(gateway_config)

        session_factory.sessions[0].error_event.emit(-1, 2105, "HMDS data farm connection is broken")

        assert received == [(-1, 2105)]

    async def test_idle_watchdog_disconnects(self, session_factory, fake_clock, gateway_config):
        settings = ConnectionSettings(
            min_attempt_interval_seconds=0,
            idle_timeout_seconds=1800,
            watchdog_interval_seconds=30,
        )
        manager = IbConnectionManager(
            session_factory, settings=settings, clock=fake_clock, sleep=fake_clock.sleep
        )
        await manager.connect(gateway_config)

        for _ in range(1000):
            if not manager.is_connected():
                break
            await asyncio.sleep(0)

        assert not manager.is_connected()
        assert manager.idle_disconnects == 1
        assert fake_clock.now >= 1000.0 + 1800

    def test_stats_and_repr(self, session_factory):
        manager = IbConnectionManager(session_factory, settings=ConnectionSettings())
        stats = manager.get_stats()

        assert stats["state"] == "disconnected"
        assert stats["connected"] is False
        assert stats["idle_timeout"] == 1800
        assert "disconnected" in str(manager)
        assert "sessions_created=0" in repr(manager)
