"""Tests for the session lifecycle state machine and failover."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from dbops.config import AppConfig
from dbops.crypto import EncryptionService, StaticMachineEntropy
from dbops.errors import ConnectivityError, QueryExecutionError
from dbops.events import (
    ConnectionAutoSwitched,
    ConnectionSwitched,
    ErrorOccurred,
    EventBus,
    NoConnectionsAvailable,
    SessionsRefreshed,
    StateChanged,
)
from dbops.manager import ConnectionManager
from dbops.models import ConnectionProfile, ConnectionState, SessionRow
from dbops.queries import ConnectionParams
from dbops.session import NO_ACTIVE_CONNECTION, OPERATION_IN_PROGRESS, SessionLifecycle
from dbops.store import ConnectionStore


class _QueryStub:
    """Reachability and row results keyed by host."""

    def __init__(self, reachable: set[str] | None = None) -> None:
        self.reachable = set(reachable or ())
        self.rows: dict[str, tuple[SessionRow, ...]] = {}
        self.refresh_error: Exception | None = None
        self.attempts: list[str] = []

    def test_connection(self, params: ConnectionParams) -> bool:
        self.attempts.append(params.host)
        return params.host in self.reachable

    def run_session_query(self, params: ConnectionParams) -> tuple[SessionRow, ...]:
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.rows.get(params.host, (SessionRow(pid=1, database_name=params.database),))


def _profile(name: str, *, last_used_days_ago: int = 0, **overrides) -> ConnectionProfile:
    values = {
        "name": name,
        "host": name.lower(),
        "database": "postgres",
        "username": "postgres",
        "last_used_at": datetime(2024, 6, 1, tzinfo=timezone.utc) - timedelta(days=last_used_days_ago),
    }
    values.update(overrides)
    return ConnectionProfile(**values)


def _setup(
    tmp_path: Path,
    query: _QueryStub,
    *,
    config: AppConfig | None = None,
) -> tuple[ConnectionManager, SessionLifecycle, list[object]]:
    bus = EventBus()
    events: list[object] = []
    bus.subscribe(events.append)
    config = config or AppConfig()
    manager = ConnectionManager(
        ConnectionStore(tmp_path / "connections.json"),
        EncryptionService(StaticMachineEntropy(b"test-machine")),
        query,
        bus=bus,
        config=config,
    )
    manager.load()
    lifecycle = SessionLifecycle(manager, query, bus=bus, config=config)
    return manager, lifecycle, events


def _states(events: list[object]) -> list[ConnectionState]:
    return [event.new for event in events if isinstance(event, StateChanged)]


def test_initial_state_is_disconnected(tmp_path: Path) -> None:
    _, lifecycle, _ = _setup(tmp_path, _QueryStub())

    snapshot = lifecycle.snapshot()

    assert snapshot.state is ConnectionState.DISCONNECTED
    assert snapshot.profile is None
    assert snapshot.sessions == ()


def test_refresh_without_connection_fails_without_state_change(tmp_path: Path) -> None:
    _, lifecycle, events = _setup(tmp_path, _QueryStub())

    result = lifecycle.refresh()

    assert result.ok is False
    assert result.message == NO_ACTIVE_CONNECTION
    assert lifecycle.state is ConnectionState.DISCONNECTED
    assert _states(events) == []
    assert isinstance(events[-1], ErrorOccurred)


def test_connect_success_records_active_profile_and_refreshes(tmp_path: Path) -> None:
    query = _QueryStub({"primary"})
    manager, lifecycle, events = _setup(tmp_path, query)
    profile = manager.add(_profile("Primary", last_used_days_ago=5), "pw")

    result = lifecycle.connect(profile)

    assert result.ok is True
    assert lifecycle.state is ConnectionState.CONNECTED
    assert lifecycle.active_profile.id == profile.id
    assert lifecycle.sessions[0].pid == 1
    assert _states(events) == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
    assert any(isinstance(event, SessionsRefreshed) for event in events)
    assert isinstance(events[-1], ConnectionSwitched)
    assert manager.get(profile.id).last_used_at > profile.last_used_at


def test_connect_failure_moves_to_failed_without_active_profile(tmp_path: Path) -> None:
    query = _QueryStub()
    manager, lifecycle, events = _setup(tmp_path, query)
    profile = manager.add(_profile("Primary"), "pw")

    result = lifecycle.connect(profile)

    assert result.ok is False
    assert lifecycle.state is ConnectionState.FAILED
    assert lifecycle.active_profile is None
    assert lifecycle.snapshot().last_error
    assert _states(events) == [ConnectionState.CONNECTING, ConnectionState.FAILED]


def test_connect_with_undecryptable_secret_fails(tmp_path: Path) -> None:
    query = _QueryStub({"primary"})
    manager, lifecycle, _ = _setup(tmp_path, query)
    profile = manager.add(_profile("Primary"), "pw")
    broken = profile.model_copy(update={"encrypted_secret": "%%%"})

    result = lifecycle.connect(broken)

    assert result.ok is False
    assert "re-enter the password" in result.message
    assert query.attempts == []
    assert lifecycle.state is ConnectionState.FAILED


def test_retry_reconnects_failed_profile(tmp_path: Path) -> None:
    query = _QueryStub()
    manager, lifecycle, _ = _setup(tmp_path, query)
    profile = manager.add(_profile("Primary"), "pw")
    lifecycle.connect(profile)
    query.reachable.add("primary")

    result = lifecycle.retry()

    assert result.ok is True
    assert lifecycle.state is ConnectionState.CONNECTED


def test_new_connect_replaces_previous_active_profile(tmp_path: Path) -> None:
    query = _QueryStub({"primary", "replica"})
    manager, lifecycle, _ = _setup(tmp_path, query)
    primary = manager.add(_profile("Primary"), "pw")
    replica = manager.add(_profile("Replica"), "pw")

    lifecycle.connect(primary)
    lifecycle.connect(replica)

    assert lifecycle.active_profile.id == replica.id
    assert lifecycle.sessions[0].database_name == "postgres"


def test_refresh_connectivity_error_moves_to_failed_and_clears_rows(tmp_path: Path) -> None:
    query = _QueryStub({"primary"})
    manager, lifecycle, events = _setup(tmp_path, query)
    lifecycle.connect(manager.add(_profile("Primary"), "pw"))
    query.refresh_error = ConnectivityError("Connection failure - network or server issue")

    result = lifecycle.refresh()

    assert result.ok is False
    assert lifecycle.state is ConnectionState.FAILED
    assert lifecycle.sessions == ()
    assert lifecycle.active_profile is None
    assert any(isinstance(event, ErrorOccurred) and "Failed to refresh" in event.message for event in events)


def test_refresh_message_classified_as_connectivity(tmp_path: Path) -> None:
    query = _QueryStub({"primary"})
    manager, lifecycle, _ = _setup(tmp_path, query)
    lifecycle.connect(manager.add(_profile("Primary"), "pw"))
    query.refresh_error = RuntimeError("server closed the connection unexpectedly")

    lifecycle.refresh()

    assert lifecycle.state is ConnectionState.FAILED


def test_refresh_other_error_keeps_stale_rows(tmp_path: Path) -> None:
    query = _QueryStub({"primary"})
    manager, lifecycle, events = _setup(tmp_path, query)
    lifecycle.connect(manager.add(_profile("Primary"), "pw"))
    cached = lifecycle.sessions
    query.refresh_error = QueryExecutionError("permission denied for view pg_stat_activity")

    result = lifecycle.refresh()

    assert result.ok is False
    assert lifecycle.state is ConnectionState.CONNECTED
    assert lifecycle.sessions == cached
    assert isinstance(events[-1], ErrorOccurred)


def test_disconnect_releases_everything(tmp_path: Path) -> None:
    query = _QueryStub({"primary"})
    manager, lifecycle, events = _setup(tmp_path, query)
    lifecycle.connect(manager.add(_profile("Primary"), "pw"))

    lifecycle.disconnect()

    assert lifecycle.state is ConnectionState.DISCONNECTED
    assert lifecycle.active_profile is None
    assert lifecycle.sessions == ()
    assert _states(events)[-1] is ConnectionState.DISCONNECTED


def test_deleting_active_profile_fails_over_in_usage_order(tmp_path: Path) -> None:
    query = _QueryStub({"active", "c"})
    manager, lifecycle, events = _setup(tmp_path, query)
    active = manager.add(_profile("Active", last_used_days_ago=0), "pw")
    manager.add(_profile("A", last_used_days_ago=1), "pw")
    manager.add(_profile("B", last_used_days_ago=2), "pw")
    c = manager.add(_profile("C", last_used_days_ago=3), "pw")
    lifecycle.connect(active)
    query.attempts.clear()
    events.clear()

    assert manager.remove(active.id) is True

    assert query.attempts == ["a", "b", "c"]
    assert lifecycle.state is ConnectionState.CONNECTED
    assert lifecycle.active_profile.id == c.id
    switched = [event for event in events if isinstance(event, ConnectionAutoSwitched)]
    assert len(switched) == 1
    assert switched[0].profile.name == "C"
    assert not any(isinstance(event, ConnectionSwitched) for event in events)


def test_failover_with_all_candidates_failing_requests_selection(tmp_path: Path) -> None:
    query = _QueryStub({"active"})
    manager, lifecycle, events = _setup(tmp_path, query)
    active = manager.add(_profile("Active"), "pw")
    manager.add(_profile("A"), "pw")
    manager.add(_profile("B"), "pw")
    lifecycle.connect(active)

    manager.remove(active.id)

    assert lifecycle.state is ConnectionState.DISCONNECTED
    assert lifecycle.active_profile is None
    assert lifecycle.sessions == ()
    unavailable = [event for event in events if isinstance(event, NoConnectionsAvailable)]
    assert len(unavailable) == 1
    assert "Failed to connect to any available connections" in unavailable[0].message


def test_deleting_last_profile_enters_no_connections(tmp_path: Path) -> None:
    query = _QueryStub({"only"})
    manager, lifecycle, events = _setup(tmp_path, query)
    only = manager.add(_profile("Only"), "pw")
    lifecycle.connect(only)

    manager.remove(only.id)

    assert lifecycle.state is ConnectionState.DISCONNECTED
    assert isinstance(events[-1], NoConnectionsAvailable)
    assert events[-1].message == "No connections configured"


def test_deleting_inactive_profile_does_not_fail_over(tmp_path: Path) -> None:
    query = _QueryStub({"primary", "other"})
    manager, lifecycle, _ = _setup(tmp_path, query)
    primary = manager.add(_profile("Primary"), "pw")
    other = manager.add(_profile("Other"), "pw")
    lifecycle.connect(primary)
    query.attempts.clear()

    manager.remove(other.id)

    assert query.attempts == []
    assert lifecycle.active_profile.id == primary.id


def test_refresh_failure_can_trigger_failover(tmp_path: Path) -> None:
    query = _QueryStub({"primary", "backup"})
    config = AppConfig(failover_on_refresh_failure=True)
    manager, lifecycle, events = _setup(tmp_path, query, config=config)
    primary = manager.add(_profile("Primary"), "pw")
    backup = manager.add(_profile("Backup", last_used_days_ago=3), "pw")
    lifecycle.connect(primary)
    query.reachable.discard("primary")
    query.refresh_error = ConnectivityError("Connection timeout")

    def _recover(event: object) -> None:
        if isinstance(event, StateChanged) and event.new is ConnectionState.FAILED:
            query.refresh_error = None

    manager.bus.subscribe(_recover, StateChanged)

    result = lifecycle.refresh()

    assert result.ok is True
    assert lifecycle.active_profile.id == backup.id
    assert any(isinstance(event, ConnectionAutoSwitched) for event in events)


def test_concurrent_operation_is_rejected(tmp_path: Path) -> None:
    entered = threading.Event()
    release = threading.Event()

    class _SlowQuery(_QueryStub):
        def test_connection(self, params: ConnectionParams) -> bool:
            entered.set()
            release.wait(timeout=5)
            return True

    query = _SlowQuery()
    manager, lifecycle, _ = _setup(tmp_path, query)
    profile = manager.add(_profile("Primary"), "pw")
    results: list[object] = []
    worker = threading.Thread(target=lambda: results.append(lifecycle.connect(profile)))
    worker.start()
    assert entered.wait(timeout=5)

    rejected = lifecycle.refresh()
    release.set()
    worker.join(timeout=5)

    assert rejected.busy is True
    assert rejected.message == OPERATION_IN_PROGRESS
    assert results[0].ok is True


def test_session_at_bounds(tmp_path: Path) -> None:
    query = _QueryStub({"primary"})
    query.rows["primary"] = (SessionRow(pid=10), SessionRow(pid=11, client_address="10.0.0.1"))
    manager, lifecycle, _ = _setup(tmp_path, query)
    lifecycle.connect(manager.add(_profile("Primary"), "pw"))

    assert lifecycle.session_at(1).machine == "10.0.0.1"
    assert lifecycle.session_at(2) is None
    assert lifecycle.session_at(-1) is None


def test_close_unsubscribes_and_disconnects(tmp_path: Path) -> None:
    query = _QueryStub({"primary", "other"})
    manager, lifecycle, _ = _setup(tmp_path, query)
    primary = manager.add(_profile("Primary"), "pw")
    manager.add(_profile("Other"), "pw")
    lifecycle.connect(primary)

    lifecycle.close()
    query.attempts.clear()
    manager.remove(primary.id)

    assert lifecycle.state is ConnectionState.DISCONNECTED
    assert query.attempts == []



def test_replacing_import_that_drops_active_profile_fails_over(tmp_path: Path) -> None:
    query = _QueryStub({"primary", "other"})
    source, _, _ = _setup(tmp_path / "source", query)
    other = source.add(_profile("Other"), "pw")
    export_path = tmp_path / "export.json"
    source.export_to(export_path)
    manager, lifecycle, events = _setup(tmp_path / "target", query)
    lifecycle.connect(manager.add(_profile("Primary"), "pw"))

    manager.import_from(export_path, replace_existing=True)

    assert lifecycle.state is ConnectionState.CONNECTED
    assert lifecycle.active_profile.id == other.id
    assert isinstance(events[-1], ConnectionAutoSwitched)


def test_deletion_during_running_operation_is_settled_afterwards(tmp_path: Path) -> None:
    entered = threading.Event()
    release = threading.Event()

    class _SlowRefresh(_QueryStub):
        blocking = False

        def run_session_query(self, params: ConnectionParams) -> tuple[SessionRow, ...]:
            if self.blocking and params.host == "primary":
                entered.set()
                release.wait(timeout=5)
            return super().run_session_query(params)

    query = _SlowRefresh({"primary", "backup"})
    manager, lifecycle, events = _setup(tmp_path, query)
    primary = manager.add(_profile("Primary"), "pw")
    backup = manager.add(_profile("Backup", last_used_days_ago=3), "pw")
    lifecycle.connect(primary)
    query.blocking = True
    worker = threading.Thread(target=lifecycle.refresh)
    worker.start()
    assert entered.wait(timeout=5)

    manager.remove(primary.id)
    release.set()
    worker.join(timeout=5)

    assert lifecycle.state is ConnectionState.CONNECTED
    assert lifecycle.active_profile.id == backup.id
    assert any(isinstance(event, ConnectionAutoSwitched) for event in events)
