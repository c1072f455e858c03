"""
Registry Store Abstraction

Defines the RegistryStore interface and two implementations:
- InMemoryRegistryStore: development and testing
- PostgresRegistryStore: production, durable and safe across processes

The store owns two pieces of state that always change together:
- the claims table (actor -> latest claimed amount)
- the append-only audit log of registration events

Both are written by exactly one operation, RecordContext.commit, inside
exactly one transaction. There is no other write path.

TRANSACTION CONTRACT:

    with store.begin_record() as ctx:
        # ctx holds the store's single write lock
        balance check ...
        ctx.commit(event, payload_canon, canon_version)

Leaving the block without commit (including by exception) rolls back
and releases the lock with zero side effects.
"""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Generator, Optional
from uuid import UUID

from ..core.hasher import Hasher
from ..schemas import EventType, RegistryEvent


SCHEMA_PATH = Path(__file__).parent / "schema.sql"


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for registry store errors."""
    pass


class ConcurrencyError(StoreError):
    """Raised when the chain head moved under an open transaction."""
    pass


class ChainIntegrityError(StoreError):
    """Raised when an event does not link onto the current chain head."""
    pass


class LockTimeoutError(StoreError):
    """Raised when the write lock cannot be acquired in time (registry busy)."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class ChainHead:
    """State of the audit log head, locked for the duration of a record."""
    last_sequence: int  # -1 means empty log
    last_event_hash: Optional[str]

    @property
    def next_sequence(self) -> int:
        return self.last_sequence + 1

    @property
    def is_empty(self) -> bool:
        return self.last_sequence == -1


@dataclass
class RecordContext:
    """
    Transaction context for one registration.

    Holds the connection/cursor (or the in-memory lock) so that commit
    and rollback always happen on whatever acquired the lock.
    """
    head: ChainHead
    _store: "RegistryStore"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def commit(
        self,
        event: RegistryEvent,
        payload_canon: str,
        canon_version: int,
    ) -> RegistryEvent:
        """
        Write the claim and append the event, atomically.

        The stored claim for event.actor becomes event.amount.
        """
        if self._committed:
            raise StoreError("Transaction already committed")
        if self._rolled_back:
            raise StoreError("Transaction already rolled back")

        result = self._store._do_commit(self, event, payload_canon, canon_version)
        self._committed = True
        return result

    def rollback(self) -> None:
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class RegistryStore(ABC):
    """
    Abstract base class for registry storage.

    Implementations must ensure:
    1. begin_record() serializes all writers behind one lock
    2. claim write and event append commit together or not at all
    3. sequence numbers have no gaps or duplicates
    4. each event links onto the previous event hash
    """

    @contextmanager
    @abstractmethod
    def begin_record(self) -> Generator[RecordContext, None, None]:
        """
        Begin an atomic registration.

        Acquires the write lock, yields a RecordContext carrying the
        current chain head, and rolls back anything not committed.
        """
        pass

    @abstractmethod
    def _do_commit(
        self,
        ctx: RecordContext,
        event: RegistryEvent,
        payload_canon: str,
        canon_version: int,
    ) -> RegistryEvent:
        """Internal: commit within current transaction. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: RecordContext) -> None:
        """Internal: rollback current transaction. Use ctx.rollback() instead."""
        pass

    @abstractmethod
    def get_claim(self, actor: str) -> int:
        """Latest claimed amount for actor, 0 if never registered."""
        pass

    @abstractmethod
    def list_claims(self) -> dict[str, int]:
        pass

    @abstractmethod
    def list_all(self) -> list[RegistryEvent]:
        """All events ordered by sequence number."""
        pass

    @abstractmethod
    def list_for_actor(self, actor: str) -> list[RegistryEvent]:
        pass

    @abstractmethod
    def get_head(self) -> ChainHead:
        """Current chain head, without locking."""
        pass

    @abstractmethod
    def get_event_count(self) -> int:
        pass

    @abstractmethod
    def snapshot(self) -> tuple[list[RegistryEvent], dict[str, int]]:
        """
        All events and the claims table, read as one consistent state.

        No registration may commit between the two reads.
        """
        pass

    @staticmethod
    def _check_linkage(
        event: RegistryEvent,
        expected_sequence: int,
        expected_prev_hash: Optional[str],
    ) -> None:
        """Shared commit-time validation of an event against the locked head."""
        if event.sequence_number != expected_sequence:
            raise ConcurrencyError(
                f"Sequence mismatch: expected {expected_sequence}, "
                f"got {event.sequence_number}"
            )

        if expected_sequence == 0:
            if event.previous_event_hash is not None:
                raise ChainIntegrityError(
                    "Genesis event must have previous_event_hash=None"
                )
        elif event.previous_event_hash != expected_prev_hash:
            raise ConcurrencyError(
                f"Previous hash mismatch: expected {expected_prev_hash}, "
                f"got {event.previous_event_hash}"
            )

        computed_hash = Hasher.hash_event(event.payload, event.previous_event_hash)
        if computed_hash != event.event_hash:
            raise ChainIntegrityError(
                f"Hash verification failed: computed {computed_hash[:16]}..., "
                f"claimed {event.event_hash[:16]}..."
            )


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryRegistryStore(RegistryStore):
    """
    In-memory RegistryStore.

    Suitable for development, tests and single-process deployments that
    can afford to lose state on restart.
    """

    _LOCK_TOKEN = "in_memory_lock"

    def __init__(self):
        self._claims: dict[str, int] = {}
        self._events: list[RegistryEvent] = []
        self._head = ChainHead(last_sequence=-1, last_event_hash=None)
        self._lock = Lock()

    @contextmanager
    def begin_record(self) -> Generator[RecordContext, None, None]:
        self._lock.acquire()

        head = ChainHead(
            last_sequence=self._head.last_sequence,
            last_event_hash=self._head.last_event_hash,
        )
        ctx = RecordContext(head=head, _store=self, _conn=self._LOCK_TOKEN)

        try:
            yield ctx
        finally:
            if not ctx._committed:
                ctx.rollback()

    def _do_commit(
        self,
        ctx: RecordContext,
        event: RegistryEvent,
        payload_canon: str,
        canon_version: int,
    ) -> RegistryEvent:
        if ctx._conn != self._LOCK_TOKEN:
            raise StoreError("_do_commit called outside begin_record")

        try:
            self._check_linkage(
                event,
                self._head.last_sequence + 1,
                self._head.last_event_hash,
            )

            # Both writes below cannot fail once linkage is validated
            self._claims[event.actor] = event.amount
            self._events.append(event)
            self._head = ChainHead(
                last_sequence=event.sequence_number,
                last_event_hash=event.event_hash,
            )
            return event
        finally:
            ctx._conn = None
            self._lock.release()

    def _do_rollback(self, ctx: RecordContext) -> None:
        if ctx._conn == self._LOCK_TOKEN:
            ctx._conn = None
            self._lock.release()

    def get_claim(self, actor: str) -> int:
        return self._claims.get(actor, 0)

    def list_claims(self) -> dict[str, int]:
        return dict(self._claims)

    def list_all(self) -> list[RegistryEvent]:
        return sorted(self._events, key=lambda e: e.sequence_number)

    def list_for_actor(self, actor: str) -> list[RegistryEvent]:
        return sorted(
            [e for e in self._events if e.actor == actor],
            key=lambda e: e.sequence_number,
        )

    def get_head(self) -> ChainHead:
        return ChainHead(
            last_sequence=self._head.last_sequence,
            last_event_hash=self._head.last_event_hash,
        )

    def get_event_count(self) -> int:
        return len(self._events)

    def snapshot(self) -> tuple[list[RegistryEvent], dict[str, int]]:
        with self._lock:
            return list(self._events), dict(self._claims)

    def clear(self) -> None:
        """Clear all state (for testing only)."""
        with self._lock:
            self._claims.clear()
            self._events.clear()
            self._head = ChainHead(last_sequence=-1, last_event_hash=None)


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

class PostgresRegistryStore(RegistryStore):
    """
    PostgreSQL RegistryStore (psycopg2).

    Writers serialize on a FOR UPDATE lock of the single registry_head
    row, so any number of API processes can share one database.
    Transaction state lives in the RecordContext, never on the store,
    so one store instance can be shared across threads.

    Tables are created from schema.sql (see apply_schema).
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    PGCODE_LOCK_NOT_AVAILABLE = "55P03"
    PGCODE_QUERY_CANCELED = "57014"

    _EVENT_COLUMNS = """
        event_id,
        sequence_number,
        previous_event_hash,
        event_hash,
        event_type,
        actor,
        created_at,
        payload_json
    """

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable returning a new psycopg2 connection
            lock_timeout_ms: How long a writer waits for the head lock
            statement_timeout_ms: Max statement execution time
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def apply_schema(self) -> None:
        """Create tables if they do not exist."""
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            cursor.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
            conn.commit()
        finally:
            cursor.close()
            conn.close()

    @contextmanager
    def begin_record(self) -> Generator[RecordContext, None, None]:
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        ctx = None

        try:
            cursor.execute("BEGIN")
            # SET LOCAL keeps timeouts transaction-scoped
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")

            try:
                cursor.execute("""
                    SELECT last_sequence, last_event_hash
                    FROM registry_head
                    WHERE id = TRUE
                    FOR UPDATE
                """)
            except Exception as e:
                kind = self._timeout_kind(e)
                if kind == "lock":
                    raise LockTimeoutError(
                        "Registry busy - could not acquire lock. Try again."
                    ) from e
                if kind == "statement":
                    raise StoreError("Query timed out - statement took too long.") from e
                raise

            row = cursor.fetchone()
            if row is None:
                cursor.execute("""
                    INSERT INTO registry_head (id, last_sequence, last_event_hash)
                    VALUES (TRUE, -1, NULL)
                    ON CONFLICT (id) DO NOTHING
                """)
                cursor.execute("""
                    SELECT last_sequence, last_event_hash
                    FROM registry_head
                    WHERE id = TRUE
                    FOR UPDATE
                """)
                row = cursor.fetchone()

            head = ChainHead(last_sequence=row[0], last_event_hash=row[1])
            ctx = RecordContext(head=head, _store=self, _conn=conn, _cursor=cursor)

            yield ctx

        finally:
            if ctx is not None and not ctx._committed:
                ctx.rollback()
            elif ctx is None:
                conn.rollback()
            try:
                cursor.close()
            finally:
                conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL exception as "lock", "statement", "timeout" or None.

        57014 (query_canceled) covers both lock_timeout and statement_timeout,
        so the message decides which one it was.
        """
        pgcode = getattr(e, "pgcode", None)
        err_msg = (getattr(e, "pgerror", None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if "lock timeout" in err_msg or "lock_timeout" in err_msg:
                return "lock"
            if "statement timeout" in err_msg or "statement_timeout" in err_msg:
                return "statement"
            return "timeout"

        return None

    def _do_commit(
        self,
        ctx: RecordContext,
        event: RegistryEvent,
        payload_canon: str,
        canon_version: int,
    ) -> RegistryEvent:
        from psycopg2.extras import Json

        if ctx._cursor is None or ctx._conn is None:
            raise StoreError("_do_commit called outside begin_record context")

        cursor = ctx._cursor
        conn = ctx._conn

        cursor.execute("""
            SELECT last_sequence, last_event_hash
            FROM registry_head
            WHERE id = TRUE
        """)
        row = cursor.fetchone()
        self._check_linkage(event, row[0] + 1, row[1])

        cursor.execute(f"""
            INSERT INTO registry_events ({self._EVENT_COLUMNS}, payload_canon, canon_version)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            str(event.event_id),
            event.sequence_number,
            event.previous_event_hash,
            event.event_hash,
            event.event_type.value,
            event.actor,
            event.created_at,
            Json(event.payload),
            payload_canon,
            canon_version,
        ))

        cursor.execute("""
            INSERT INTO registry_claims (actor, amount, updated_sequence)
            VALUES (%s, %s, %s)
            ON CONFLICT (actor) DO UPDATE
            SET amount = EXCLUDED.amount, updated_sequence = EXCLUDED.updated_sequence
        """, (event.actor, event.amount, event.sequence_number))

        cursor.execute("""
            UPDATE registry_head
            SET last_sequence = %s, last_event_hash = %s
            WHERE id = TRUE
        """, (event.sequence_number, event.event_hash))

        conn.commit()
        return event

    def _do_rollback(self, ctx: RecordContext) -> None:
        if ctx._conn is not None:
            ctx._conn.rollback()

    def _query(self, sql: str, params: tuple = ()) -> list[tuple]:
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            cursor.execute(sql, params)
            return cursor.fetchall()
        finally:
            cursor.close()
            conn.close()

    def get_claim(self, actor: str) -> int:
        rows = self._query(
            "SELECT amount FROM registry_claims WHERE actor = %s",
            (actor,),
        )
        # NUMERIC comes back as Decimal
        return int(rows[0][0]) if rows else 0

    def list_claims(self) -> dict[str, int]:
        rows = self._query("SELECT actor, amount FROM registry_claims ORDER BY actor")
        return {actor: int(amount) for actor, amount in rows}

    def list_all(self) -> list[RegistryEvent]:
        rows = self._query(f"""
            SELECT {self._EVENT_COLUMNS}
            FROM registry_events
            ORDER BY sequence_number
        """)
        return [self._row_to_event(row) for row in rows]

    def list_for_actor(self, actor: str) -> list[RegistryEvent]:
        rows = self._query(f"""
            SELECT {self._EVENT_COLUMNS}
            FROM registry_events
            WHERE actor = %s
            ORDER BY sequence_number
        """, (actor,))
        return [self._row_to_event(row) for row in rows]

    def get_head(self) -> ChainHead:
        rows = self._query("""
            SELECT last_sequence, last_event_hash
            FROM registry_head
            WHERE id = TRUE
        """)
        if not rows:
            return ChainHead(last_sequence=-1, last_event_hash=None)
        return ChainHead(last_sequence=rows[0][0], last_event_hash=rows[0][1])

    def get_event_count(self) -> int:
        return self._query("SELECT COUNT(*) FROM registry_events")[0][0]

    def snapshot(self) -> tuple[list[RegistryEvent], dict[str, int]]:
        conn = self._connection_factory()
        conn.set_session(isolation_level="REPEATABLE READ", readonly=True)
        cursor = conn.cursor()
        try:
            cursor.execute(f"""
                SELECT {self._EVENT_COLUMNS}
                FROM registry_events
                ORDER BY sequence_number
            """)
            events = [self._row_to_event(row) for row in cursor.fetchall()]
            cursor.execute("SELECT actor, amount FROM registry_claims")
            claims = {actor: int(amount) for actor, amount in cursor.fetchall()}
            conn.rollback()
            return events, claims
        finally:
            cursor.close()
            conn.close()

    def _row_to_event(self, row: tuple) -> RegistryEvent:
        payload = row[7]
        if isinstance(payload, str):
            payload = json.loads(payload)

        return RegistryEvent(
            event_id=row[0] if isinstance(row[0], UUID) else UUID(str(row[0])),
            sequence_number=row[1],
            previous_event_hash=row[2],
            event_hash=row[3],
            event_type=EventType(row[4]),
            actor=row[5],
            created_at=row[6],
            payload=payload,
        )
