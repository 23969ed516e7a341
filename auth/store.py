"""
auth/store.py -- SQLAlchemy Core persistence layer for principals.

Pattern: Repository + Data Mapper. PrincipalStore is the repository;
_row_to_principal is the mapper. Flow and route code never touches SQL.

The auth core treats this store as an external collaborator: it reads
credentials and lock state, and mutates exactly three things -- the failure
counter, the lock timestamp, and last_login. Principal creation happens out
of band (main.py create-admin).

Security:
  All queries use bound parameters. No f-strings in SQL.

  Lockout counters are updated with ONE UPDATE statement whose CASE
  expressions read the pre-update row. Two concurrent failed attempts can
  never both read failed_login_attempts=4 and both miss the lock threshold.

  Single-admin rule: create_principal() checks first (friendly error) and a
  partial unique index on role='admin' backs it at the DB level, so two
  concurrent create-admin runs cannot both succeed.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    func,
    null,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Principal
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_principals = Table(
    "principals",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),  # always lower-case
    Column("name", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role", String(16), nullable=False, server_default="viewer"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", Float),  # epoch seconds; NULL = not locked
    Column("last_login", String(32)),
    Column("password_changed_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

Index(
    "uq_principals_single_admin",
    _principals.c.role,
    unique=True,
    sqlite_where=_principals.c.role == "admin",
    postgresql_where=_principals.c.role == "admin",
)


class AdminExistsError(ValueError):
    """Raised when a second admin principal would be created."""


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for Principal records.

    Usage:
        store = PrincipalStore()
        store.create_principal(Principal(email="me@example.com", name="Me",
                                         password_hash=hash_password("..."), role="admin"))
        principal = store.find_by_email("ME@example.com")
        store.close()
    """

    def __init__(self, db_url: str = "") -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Cheap liveness probe for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1)).scalar()
        return True

    def has_admin(self) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_principals).where(_principals.c.role == "admin")
            ).scalar()
        return (count or 0) > 0

    def find_by_email(self, email: str) -> Principal | None:
        """Case-insensitive lookup. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where(_principals.c.email == email.strip().lower())
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_id(self, principal_id: str) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(_principals.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_principal(self, principal: Principal) -> str:
        """Insert a new principal and return its generated id.

        Raises AdminExistsError if principal.role == "admin" and an admin
        already exists. Raises sqlalchemy.exc.IntegrityError if the email is
        taken (or a concurrent admin insert won the race on the partial index).
        """
        if principal.role == "admin" and self.has_admin():
            raise AdminExistsError("Only one admin user is allowed in the system")
        principal_id = uuid.uuid4().hex
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _principals.insert().values(
                    id=principal_id,
                    email=principal.email.strip().lower(),
                    name=principal.name,
                    password_hash=principal.password_hash,
                    role=principal.role,
                    failed_login_attempts=0,
                    lock_until=None,
                    password_changed_at=now,
                    created_at=now,
                )
            )
            conn.commit()
        return principal_id

    def increment_failed_attempts(
        self,
        principal_id: str,
        threshold: int = 0,
        lock_seconds: int = 0,
        now: Optional[float] = None,
    ) -> Principal | None:
        """Record one failed password attempt atomically; return the updated record.

        Single UPDATE with CASE expressions (the right-hand sides see the
        pre-update row):
          - lock expired      -> counter = 1, lock cleared
          - counter+1 >= max  -> counter += 1, lock_until = now + lock_seconds
          - otherwise         -> counter += 1
        """
        settings = get_settings()
        threshold = threshold or settings.lockout_threshold
        lock_seconds = lock_seconds or settings.lockout_seconds
        now = time.time() if now is None else now

        c = _principals.c
        lock_expired = and_(c.lock_until.isnot(None), c.lock_until <= now)
        stmt = (
            _principals.update()
            .where(c.id == principal_id)
            .values(
                failed_login_attempts=case(
                    (lock_expired, 1),
                    else_=c.failed_login_attempts + 1,
                ),
                lock_until=case(
                    (lock_expired, null()),
                    (c.failed_login_attempts + 1 >= threshold, now + lock_seconds),
                    else_=c.lock_until,
                ),
            )
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)
            row = conn.execute(_principals.select().where(c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def reset_failed_attempts(self, principal_id: str) -> bool:
        """Clear the failure counter and any lock. Returns False if id unknown."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _principals.update()
                .where(_principals.c.id == principal_id)
                .values(failed_login_attempts=0, lock_until=None)
            )
            conn.commit()
        return result.rowcount > 0

    def record_successful_login(self, principal_id: str) -> None:
        """Reset counter + lock and stamp last_login in one statement."""
        with self.engine.connect() as conn:
            conn.execute(
                _principals.update()
                .where(_principals.c.id == principal_id)
                .values(failed_login_attempts=0, lock_until=None, last_login=_now_iso())
            )
            conn.commit()

    def update_password(self, principal_id: str, password_hash: str) -> bool:
        """Replace the stored hash. Callers must revoke sessions afterwards."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _principals.update()
                .where(_principals.c.id == principal_id)
                .values(password_hash=password_hash, password_changed_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        role=row.role,
        failed_login_attempts=row.failed_login_attempts,
        lock_until=row.lock_until,
        last_login=row.last_login,
        password_changed_at=row.password_changed_at,
        created_at=row.created_at,
    )
