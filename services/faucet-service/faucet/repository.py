"""Postgres-backed persistence for accounts, quota windows and the disbursement queue."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Any, Iterator

import psycopg
from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool, PoolTimeout

from .domain.account import Account, Channel, IdentityBinding, Role
from .domain.contracts import Reservation
from .domain.disbursement import DisbursementRequest, DisbursementStatus
from .domain.errors import AccountNotFound, IdentityConflict, StorageUnavailable
from .domain.ports import FailureRecord

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        account_id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        domain TEXT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS identity_bindings (
        channel TEXT NOT NULL,
        handle TEXT NOT NULL,
        account_id TEXT NOT NULL REFERENCES accounts(account_id),
        created_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (channel, handle)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quota_windows (
        account_id TEXT NOT NULL REFERENCES accounts(account_id),
        day DATE NOT NULL,
        reserved_amount BIGINT NOT NULL CHECK (reserved_amount >= 0),
        updated_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (account_id, day)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quota_reservations (
        reservation_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts(account_id),
        day DATE NOT NULL,
        amount BIGINT NOT NULL CHECK (amount > 0),
        reserved_before BIGINT NOT NULL,
        reserved_after BIGINT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        released_at TIMESTAMPTZ NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS disbursement_requests (
        request_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts(account_id),
        channel TEXT NOT NULL,
        destination TEXT NOT NULL,
        amount BIGINT NOT NULL CHECK (amount > 0),
        reservation_id TEXT NOT NULL REFERENCES quota_reservations(reservation_id),
        requested_at TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL,
        tx_reference TEXT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        lease_owner TEXT NULL,
        lease_expires_at TIMESTAMPTZ NULL,
        submitted_at TIMESTAMPTZ NULL,
        last_error TEXT NULL,
        needs_reconciliation BOOLEAN NOT NULL DEFAULT FALSE,
        updated_at TIMESTAMPTZ NULL,
        finished_at TIMESTAMPTZ NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS disbursement_requests_status_idx
        ON disbursement_requests (status, lease_expires_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS disbursement_failures (
        failure_id BIGSERIAL PRIMARY KEY,
        request_id TEXT NOT NULL REFERENCES disbursement_requests(request_id),
        failed_at TIMESTAMPTZ NOT NULL,
        reason TEXT NOT NULL
    )
    """,
)

_REQUEST_COLUMNS = """
    request_id, account_id, channel, destination, amount, reservation_id, requested_at,
    status, tx_reference, attempts, lease_owner, lease_expires_at, submitted_at,
    last_error, needs_reconciliation, updated_at, finished_at
"""

_RESERVATION_COLUMNS = """
    reservation_id, account_id, day, amount, reserved_before, reserved_after, created_at, released_at
"""


def _map_request(row: tuple) -> DisbursementRequest:
    return DisbursementRequest(
        request_id=row[0],
        account_id=row[1],
        channel=Channel(row[2]),
        destination=row[3],
        amount=row[4],
        reservation_id=row[5],
        requested_at=row[6],
        status=DisbursementStatus(row[7]),
        tx_reference=row[8],
        attempts=row[9],
        lease_owner=row[10],
        lease_expires_at=row[11],
        submitted_at=row[12],
        last_error=row[13],
        needs_reconciliation=row[14],
        updated_at=row[15],
        finished_at=row[16],
    )


def _map_reservation(row: tuple) -> Reservation:
    return Reservation(*row)


def _update_request(
    cur: psycopg.Cursor,
    request: DisbursementRequest,
    expected_status: DisbursementStatus,
    expected_owner: str | None,
) -> bool:
    clauses = ["request_id = %s", "status = %s"]
    params: list[Any] = [
        request.status.value,
        request.tx_reference,
        request.attempts,
        request.lease_owner,
        request.lease_expires_at,
        request.submitted_at,
        request.last_error,
        request.needs_reconciliation,
        request.updated_at,
        request.finished_at,
        request.request_id,
        expected_status.value,
    ]
    if expected_owner is not None:
        clauses.append("lease_owner = %s")
        params.append(expected_owner)
    # amount is immutable once inserted
    cur.execute(
        f"""
        UPDATE disbursement_requests
        SET status = %s, tx_reference = %s, attempts = %s, lease_owner = %s,
            lease_expires_at = %s, submitted_at = %s, last_error = %s,
            needs_reconciliation = %s, updated_at = %s, finished_at = %s
        WHERE {" AND ".join(clauses)}
        """,
        params,
    )
    return cur.rowcount == 1


class PostgresFaucetStore:
    """Postgres persistence; per-account serialisation uses ``SELECT ... FOR UPDATE``."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    @contextmanager
    def _connection(self) -> Iterator[psycopg.Connection]:
        # The pool commits on clean exit and rolls back otherwise.
        try:
            with self._pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            logger.error("storage unavailable: %s", exc)
            raise StorageUnavailable(str(exc)) from exc

    def ensure_schema(self) -> None:
        """Create tables and indexes when they do not exist yet."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
            conn.commit()
        logger.info("postgres schema ready")

    # identity -------------------------------------------------------------

    def resolve_identity(
        self, binding: IdentityBinding, *, role: Role, domain: str | None, at: datetime
    ) -> tuple[Account, bool]:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                existing = self._find_account(cur, binding)
                if existing is not None:
                    return existing, False

                account_id = str(uuid.uuid4())
                cur.execute(
                    """
                    INSERT INTO accounts (account_id, role, domain, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (account_id, role.value, domain, at, at),
                )
                cur.execute(
                    """
                    INSERT INTO identity_bindings (channel, handle, account_id, created_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (channel, handle) DO NOTHING
                    RETURNING account_id
                    """,
                    (binding.channel.value, binding.handle, account_id, at),
                )
                if cur.fetchone() is None:
                    # Lost the race to a concurrent first contact; drop our account row.
                    conn.rollback()
                    winner = self._find_account(cur, binding)
                    if winner is None:
                        raise StorageUnavailable(f"binding {binding.key()} vanished during resolve")
                    return winner, False
                conn.commit()
        return Account(account_id=account_id, role=role, created_at=at, bindings=[binding], domain=domain), True

    def link_identity(self, account_id: str, binding: IdentityBinding) -> Account:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                account = self._load_account(cur, account_id, lock=False)
                if account is None:
                    raise AccountNotFound(account_id)
                cur.execute(
                    """
                    INSERT INTO identity_bindings (channel, handle, account_id, created_at)
                    VALUES (%s, %s, %s, NOW())
                    ON CONFLICT (channel, handle) DO NOTHING
                    """,
                    (binding.channel.value, binding.handle, account_id),
                )
                cur.execute(
                    "SELECT account_id FROM identity_bindings WHERE channel = %s AND handle = %s",
                    (binding.channel.value, binding.handle),
                )
                owner = cur.fetchone()[0]
                if owner != account_id:
                    raise IdentityConflict(f"{binding.key()} is bound to another account")
                conn.commit()
                return self._load_account(cur, account_id, lock=False)

    def get_account(self, account_id: str) -> Account | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                return self._load_account(cur, account_id, lock=False)

    def find_account(self, binding: IdentityBinding) -> Account | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                return self._find_account(cur, binding)

    def _find_account(self, cur: psycopg.Cursor, binding: IdentityBinding) -> Account | None:
        cur.execute(
            "SELECT account_id FROM identity_bindings WHERE channel = %s AND handle = %s",
            (binding.channel.value, binding.handle),
        )
        row = cur.fetchone()
        if not row:
            return None
        return self._load_account(cur, row[0], lock=False)

    def _load_account(self, cur: psycopg.Cursor, account_id: str, *, lock: bool) -> Account | None:
        query = "SELECT account_id, role, domain, created_at FROM accounts WHERE account_id = %s"
        if lock:
            query += " FOR UPDATE"
        cur.execute(query, (account_id,))
        row = cur.fetchone()
        if not row:
            return None
        cur.execute(
            "SELECT channel, handle FROM identity_bindings WHERE account_id = %s ORDER BY created_at",
            (account_id,),
        )
        bindings = [IdentityBinding(Channel(channel), handle) for channel, handle in cur.fetchall()]
        return Account(
            account_id=row[0],
            role=Role(row[1]),
            domain=row[2],
            created_at=row[3],
            bindings=bindings,
        )

    # ledger ---------------------------------------------------------------

    @contextmanager
    def account_transaction(self, account_id: str) -> Iterator["_PostgresAccountTransaction"]:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                account = self._load_account(cur, account_id, lock=True)
                if account is None:
                    raise AccountNotFound(account_id)
                yield _PostgresAccountTransaction(cur, account)

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_RESERVATION_COLUMNS} FROM quota_reservations WHERE reservation_id = %s",
                    (reservation_id,),
                )
                row = cur.fetchone()
        return _map_reservation(row) if row else None

    # queue ----------------------------------------------------------------

    def lease_next(self, worker_id: str, lease_seconds: float, now: datetime) -> DisbursementRequest | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE disbursement_requests
                    SET status = 'processing',
                        attempts = attempts + 1,
                        lease_owner = %s,
                        lease_expires_at = %s,
                        updated_at = %s
                    WHERE request_id = (
                        SELECT request_id FROM disbursement_requests
                        WHERE status = 'pending'
                           OR (status = 'processing'
                               AND NOT needs_reconciliation
                               AND lease_expires_at <= %s)
                        ORDER BY requested_at, request_id
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING {_REQUEST_COLUMNS}
                    """,
                    (worker_id, now + timedelta(seconds=lease_seconds), now, now),
                )
                row = cur.fetchone()
                conn.commit()
        return _map_request(row) if row else None

    def get_request(self, request_id: str) -> DisbursementRequest | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_REQUEST_COLUMNS} FROM disbursement_requests WHERE request_id = %s",
                    (request_id,),
                )
                row = cur.fetchone()
        return _map_request(row) if row else None

    def update_request(
        self,
        request: DisbursementRequest,
        *,
        expected_status: DisbursementStatus,
        expected_owner: str | None = None,
    ) -> bool:
        with self._connection() as conn:
            with conn.cursor() as cur:
                updated = _update_request(cur, request, expected_status, expected_owner)
                conn.commit()
        return updated

    def list_requests(
        self,
        *,
        status: DisbursementStatus | None = None,
        older_than: datetime | None = None,
        limit: int = 100,
    ) -> list[DisbursementRequest]:
        limit = max(1, min(limit, 500))
        clauses = ["TRUE"]
        params: list[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if older_than is not None:
            clauses.append("requested_at <= %s")
            params.append(older_than)
        params.append(limit)
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_REQUEST_COLUMNS} FROM disbursement_requests
                    WHERE {" AND ".join(clauses)}
                    ORDER BY requested_at, request_id
                    LIMIT %s
                    """,
                    params,
                )
                return [_map_request(row) for row in cur.fetchall()]

    def list_failures(self, request_id: str) -> list[FailureRecord]:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT request_id, failed_at, reason FROM disbursement_failures
                    WHERE request_id = %s ORDER BY failure_id
                    """,
                    (request_id,),
                )
                return [FailureRecord(*row) for row in cur.fetchall()]


class _PostgresAccountTransaction:
    """Statements issued on a cursor whose transaction holds the account row lock."""

    def __init__(self, cur: psycopg.Cursor, account: Account) -> None:
        self._cur = cur
        self._account = account

    @property
    def account(self) -> Account:
        return self._account

    def reserved_amount(self, day: date) -> int:
        self._cur.execute(
            "SELECT reserved_amount FROM quota_windows WHERE account_id = %s AND day = %s",
            (self._account.account_id, day),
        )
        row = self._cur.fetchone()
        return int(row[0]) if row else 0

    def add_reservation(self, reservation: Reservation) -> None:
        self._cur.execute(
            """
            INSERT INTO quota_windows (account_id, day, reserved_amount, updated_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (account_id, day)
            DO UPDATE SET reserved_amount = quota_windows.reserved_amount + EXCLUDED.reserved_amount,
                          updated_at = EXCLUDED.updated_at
            """,
            (reservation.account_id, reservation.day, reservation.amount, reservation.created_at),
        )
        self._cur.execute(
            f"""
            INSERT INTO quota_reservations ({_RESERVATION_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                reservation.reservation_id,
                reservation.account_id,
                reservation.day,
                reservation.amount,
                reservation.reserved_before,
                reservation.reserved_after,
                reservation.created_at,
                reservation.released_at,
            ),
        )

    def release_reservation(self, reservation_id: str, at: datetime) -> Reservation | None:
        self._cur.execute(
            f"""
            UPDATE quota_reservations SET released_at = %s
            WHERE reservation_id = %s AND account_id = %s AND released_at IS NULL
            RETURNING {_RESERVATION_COLUMNS}
            """,
            (at, reservation_id, self._account.account_id),
        )
        row = self._cur.fetchone()
        if row is None:
            return None
        released = _map_reservation(row)
        self._cur.execute(
            """
            UPDATE quota_windows
            SET reserved_amount = reserved_amount - %s, updated_at = %s
            WHERE account_id = %s AND day = %s
            """,
            (released.amount, at, released.account_id, released.day),
        )
        return released

    def set_role(self, role: Role) -> Account:
        self._cur.execute(
            "UPDATE accounts SET role = %s, updated_at = NOW() WHERE account_id = %s",
            (role.value, self._account.account_id),
        )
        self._account.role = role
        return self._account

    def insert_request(self, request: DisbursementRequest) -> None:
        self._cur.execute(
            f"""
            INSERT INTO disbursement_requests ({_REQUEST_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                request.request_id,
                request.account_id,
                request.channel.value,
                request.destination,
                request.amount,
                request.reservation_id,
                request.requested_at,
                request.status.value,
                request.tx_reference,
                request.attempts,
                request.lease_owner,
                request.lease_expires_at,
                request.submitted_at,
                request.last_error,
                request.needs_reconciliation,
                request.updated_at,
                request.finished_at,
            ),
        )

    def get_request(self, request_id: str) -> DisbursementRequest | None:
        self._cur.execute(
            f"""
            SELECT {_REQUEST_COLUMNS} FROM disbursement_requests
            WHERE request_id = %s AND account_id = %s
            FOR UPDATE
            """,
            (request_id, self._account.account_id),
        )
        row = self._cur.fetchone()
        return _map_request(row) if row else None

    def update_request(
        self,
        request: DisbursementRequest,
        *,
        expected_status: DisbursementStatus,
        expected_owner: str | None = None,
    ) -> bool:
        return _update_request(self._cur, request, expected_status, expected_owner)

    def record_failure(self, request_id: str, reason: str, at: datetime) -> None:
        self._cur.execute(
            "INSERT INTO disbursement_failures (request_id, failed_at, reason) VALUES (%s, %s, %s)",
            (request_id, at, reason),
        )
