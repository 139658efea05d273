"""Session query collaborator used to open, test and inspect connections."""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from dataclasses import dataclass, field
from typing import Any, Coroutine, Mapping, Protocol, TypeVar, runtime_checkable

import asyncpg

from .errors import ConnectivityError, QueryExecutionError
from .models import SessionRow

MAX_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_COMMAND_TIMEOUT = 10.0

_T = TypeVar("_T")

TEST_CONNECTION_QUERY = "SELECT version();"

ACTIVE_SESSIONS_QUERY = """
    SELECT
        pid,
        datname AS database_name,
        usename AS username,
        application_name,
        client_addr::text AS client_addr,
        client_hostname,
        state,
        COALESCE(query, '') AS query,
        query_start,
        wait_event_type,
        wait_event,
        state_change,
        backend_start,
        xact_start,
        state = 'active' AS is_active
    FROM pg_stat_activity
    WHERE state != 'idle'
        AND pid != pg_backend_pid()
        AND datname IS NOT NULL
    ORDER BY datname, application_name, query_start
"""

_SQLSTATE_MESSAGES = {
    "08000": "Connection exception - database server may be down",
    "08003": "Connection does not exist - connection was lost",
    "08006": "Connection failure - network or server issue",
    "28000": "Invalid authorization - check username/password",
    "28P01": "Invalid authorization - check username/password",
    "3D000": "Invalid catalog name - database does not exist",
}
_CONNECTIVITY_SQLSTATE_CLASSES = ("08", "28", "3D", "57P")
_CONNECTIVITY_MARKERS = ("connection", "network", "timeout", "database")


def clamp_timeout(value: float) -> float:
    return max(0.1, min(float(value), MAX_TIMEOUT))


@dataclass(frozen=True, slots=True)
class ConnectionParams:
    """Everything needed to open a connection, including the plaintext secret."""

    host: str
    port: int
    database: str
    user: str
    password: str = field(default="", repr=False)
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT

    def __post_init__(self) -> None:
        object.__setattr__(self, "connect_timeout", clamp_timeout(self.connect_timeout))
        object.__setattr__(self, "command_timeout", clamp_timeout(self.command_timeout))

    @property
    def label(self) -> str:
        return f"{self.user}@{self.host}:{self.port}/{self.database}"


@runtime_checkable
class SessionQuery(Protocol):
    """Capability the connection core needs from the database layer."""

    def test_connection(self, params: ConnectionParams) -> bool:
        """Return True when the target accepts a connection and answers a query.

        Failures may raise :class:`ConnectivityError` or :class:`QueryExecutionError`
        carrying the diagnostic; callers treat a raise like ``False``.
        """

    def run_session_query(self, params: ConnectionParams) -> tuple[SessionRow, ...]:
        """Return the active backend sessions on the target."""


def is_connectivity_error(exc: BaseException) -> bool:
    """Classify an error as a lost/unreachable connection rather than a query bug."""

    if isinstance(exc, (ConnectivityError, TimeoutError, OSError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CONNECTIVITY_MARKERS)


class AsyncpgSessionQuery:
    """Runs the session queries against PostgreSQL via asyncpg."""

    def __init__(self) -> None:
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="dbops-asyncpg-query",
            daemon=True,
        )
        self._loop_thread.start()

    def test_connection(self, params: ConnectionParams) -> bool:
        """Run the version query; failures raise the translated error."""

        version = self._run(self._fetch_version(params), params)
        return version is not None

    def run_session_query(self, params: ConnectionParams) -> tuple[SessionRow, ...]:
        return self._run(self._fetch_sessions(params), params)

    def shutdown(self) -> None:
        """Stop the background event loop."""

        if not self._loop.is_running():  # pragma: no cover - defensive
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=1)

    def _run(self, coro: Coroutine[Any, Any, _T], params: ConnectionParams) -> _T:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        # Outer guard in case the driver ignores its own timeouts.
        deadline = min(params.connect_timeout + params.command_timeout, MAX_TIMEOUT) + 1
        try:
            return future.result(timeout=deadline)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise ConnectivityError(
                "Connection timeout - database server may be overloaded or unreachable"
            ) from exc

    async def _fetch_version(self, params: ConnectionParams) -> object:
        conn = await self._connect(params)
        try:
            return await conn.fetchval(TEST_CONNECTION_QUERY, timeout=params.command_timeout)
        except Exception as exc:
            raise _translate(exc) from exc
        finally:
            await _close_quietly(conn)

    async def _fetch_sessions(self, params: ConnectionParams) -> tuple[SessionRow, ...]:
        conn = await self._connect(params)
        try:
            records = await conn.fetch(ACTIVE_SESSIONS_QUERY, timeout=params.command_timeout)
        except Exception as exc:
            raise _translate(exc) from exc
        finally:
            await _close_quietly(conn)
        return tuple(_row_from_record(record, server_name=params.label) for record in records)

    async def _connect(self, params: ConnectionParams):
        try:
            return await asyncpg.connect(
                host=params.host,
                port=params.port,
                database=params.database,
                user=params.user,
                password=params.password or None,
                timeout=params.connect_timeout,
                command_timeout=params.command_timeout,
            )
        except Exception as exc:
            raise _translate(exc) from exc


def _translate(exc: BaseException) -> ConnectivityError | QueryExecutionError:
    sqlstate = getattr(exc, "sqlstate", None)
    if isinstance(sqlstate, str) and sqlstate:
        message = _SQLSTATE_MESSAGES.get(sqlstate, f"Database connection error: {exc}")
        if sqlstate.startswith(_CONNECTIVITY_SQLSTATE_CLASSES):
            return ConnectivityError(message)
        return QueryExecutionError(f"Failed to retrieve sessions: {exc}")
    if isinstance(exc, TimeoutError):
        return ConnectivityError("Connection timeout - database server may be overloaded or unreachable")
    if is_connectivity_error(exc):
        return ConnectivityError(f"Database connection error: {exc}")
    return QueryExecutionError(f"Failed to retrieve sessions: {exc}")


async def _close_quietly(conn: Any) -> None:
    try:
        await conn.close()
    except Exception:  # pragma: no cover - best effort cleanup
        pass


def _row_from_record(record: Mapping[str, Any], *, server_name: str) -> SessionRow:
    def _text(key: str) -> str:
        value = record[key]
        return "" if value is None else str(value)

    return SessionRow(
        pid=int(record["pid"]),
        database_name=_text("database_name"),
        username=_text("username"),
        application_name=_text("application_name"),
        client_address=_text("client_addr"),
        client_hostname=_text("client_hostname"),
        state=_text("state"),
        query=_text("query"),
        query_start=record["query_start"],
        wait_event_type=record["wait_event_type"],
        wait_event=record["wait_event"],
        state_change=record["state_change"],
        backend_start=record["backend_start"],
        transaction_start=record["xact_start"],
        is_active=bool(record["is_active"]),
        server_name=server_name,
    )


__all__ = [
    "ACTIVE_SESSIONS_QUERY",
    "AsyncpgSessionQuery",
    "ConnectionParams",
    "SessionQuery",
    "clamp_timeout",
    "is_connectivity_error",
]
