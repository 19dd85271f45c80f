"""
Identity store: the source of truth for principals.

The gateway reads principal records on auth-state cache misses and writes
them on the revocation path (credential version bump, session cutoff,
disable). Two implementations are provided: an SQL table and an in-memory
map for single-process deployments and tests.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

from passlib.context import CryptContext
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    and_,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from authgate.core.errors import IdentityStoreError, PrincipalNotFound

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


@dataclass(frozen=True)
class PrincipalRecord:
    """Authoritative state of an admin or end user."""
    id: int
    kind: str
    username: str = ""
    credential_version: int = 1
    invalid_before: int = 0
    disabled: bool = False
    is_super: bool = False
    password_hash: Optional[str] = None
    updated_at: int = 0


class IdentityStore(ABC):
    """Lookup and revocation contract for principals."""

    @abstractmethod
    def get_principal_by_id(self, kind: str, principal_id: int) -> PrincipalRecord:
        """
        Fetch a principal.

        Raises:
            PrincipalNotFound: No such principal
            IdentityStoreError: The store could not be queried
        """

    @abstractmethod
    def get_principal_by_username(self, kind: str, username: str) -> PrincipalRecord:
        """Fetch a principal by login name. Raises PrincipalNotFound."""

    @abstractmethod
    def list_principals(self, kind: str) -> List[PrincipalRecord]:
        """All principals of ``kind`` ordered by id."""

    @abstractmethod
    def create_principal(self, record: PrincipalRecord) -> PrincipalRecord:
        """Store a new principal."""

    @abstractmethod
    def bump_credential_version(self, kind: str, principal_id: int) -> PrincipalRecord:
        """Invalidate every token issued so far by incrementing the version."""

    @abstractmethod
    def invalidate_sessions_before(self, kind: str, principal_id: int, cutoff: int) -> PrincipalRecord:
        """Reject tokens issued before ``cutoff`` (unix seconds)."""

    @abstractmethod
    def set_disabled(self, kind: str, principal_id: int, disabled: bool) -> PrincipalRecord:
        """Enable or disable a principal."""

    def ensure_schema(self) -> None:
        """Create backing storage if needed."""


class InMemoryIdentityStore(IdentityStore):
    """Thread-safe dictionary of principals."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[Tuple[str, int], PrincipalRecord] = {}

    def get_principal_by_id(self, kind: str, principal_id: int) -> PrincipalRecord:
        with self._lock:
            record = self._records.get((kind, principal_id))
        if record is None:
            raise PrincipalNotFound(f"{kind}:{principal_id}")
        return record

    def get_principal_by_username(self, kind: str, username: str) -> PrincipalRecord:
        with self._lock:
            for record in self._records.values():
                if record.kind == kind and record.username == username:
                    return record
        raise PrincipalNotFound(f"{kind}:{username}")

    def list_principals(self, kind: str) -> List[PrincipalRecord]:
        with self._lock:
            return sorted(
                (r for r in self._records.values() if r.kind == kind),
                key=lambda r: r.id,
            )

    def create_principal(self, record: PrincipalRecord) -> PrincipalRecord:
        record = replace(record, updated_at=record.updated_at or int(time.time()))
        with self._lock:
            self._records[(record.kind, record.id)] = record
        return record

    def _update(self, kind: str, principal_id: int, **changes) -> PrincipalRecord:
        with self._lock:
            record = self._records.get((kind, principal_id))
            if record is None:
                raise PrincipalNotFound(f"{kind}:{principal_id}")
            if "credential_version" in changes and changes["credential_version"] is None:
                changes["credential_version"] = record.credential_version + 1
            record = replace(record, updated_at=int(time.time()), **changes)
            self._records[(kind, principal_id)] = record
            return record

    def bump_credential_version(self, kind: str, principal_id: int) -> PrincipalRecord:
        return self._update(kind, principal_id, credential_version=None)

    def invalidate_sessions_before(self, kind: str, principal_id: int, cutoff: int) -> PrincipalRecord:
        return self._update(kind, principal_id, invalid_before=int(cutoff))

    def set_disabled(self, kind: str, principal_id: int, disabled: bool) -> PrincipalRecord:
        return self._update(kind, principal_id, disabled=bool(disabled))


class SQLIdentityStore(IdentityStore):
    """Principals stored in an SQL table keyed by ``(kind, id)``."""

    def __init__(self, engine: Engine, table_name: str = "principals"):
        self._engine = engine
        self._metadata = MetaData()
        self.table = Table(
            table_name,
            self._metadata,
            Column("kind", String(16), primary_key=True),
            Column("id", Integer, primary_key=True, autoincrement=False),
            Column("username", String(128), nullable=False),
            Column("password_hash", String(255), nullable=True),
            Column("credential_version", Integer, nullable=False, default=1),
            Column("invalid_before", BigInteger, nullable=False, default=0),
            Column("disabled", Boolean, nullable=False, default=False),
            Column("is_super", Boolean, nullable=False, default=False),
            Column("updated_at", BigInteger, nullable=False, default=0),
            UniqueConstraint("kind", "username", name=f"uq_{table_name}_username"),
        )

    def ensure_schema(self) -> None:
        try:
            self._metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise IdentityStoreError(f"Failed to create principal table: {e}") from e

    def _to_record(self, row) -> PrincipalRecord:
        return PrincipalRecord(
            id=row.id,
            kind=row.kind,
            username=row.username,
            credential_version=row.credential_version,
            invalid_before=row.invalid_before or 0,
            disabled=bool(row.disabled),
            is_super=bool(row.is_super),
            password_hash=row.password_hash,
            updated_at=row.updated_at or 0,
        )

    def _fetch_one(self, *conditions) -> Optional[PrincipalRecord]:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(select(self.table).where(and_(*conditions))).first()
        except SQLAlchemyError as e:
            raise IdentityStoreError(f"Principal lookup failed: {e}") from e
        return self._to_record(row) if row is not None else None

    def get_principal_by_id(self, kind: str, principal_id: int) -> PrincipalRecord:
        t = self.table
        record = self._fetch_one(t.c.kind == kind, t.c.id == principal_id)
        if record is None:
            raise PrincipalNotFound(f"{kind}:{principal_id}")
        return record

    def get_principal_by_username(self, kind: str, username: str) -> PrincipalRecord:
        t = self.table
        record = self._fetch_one(t.c.kind == kind, t.c.username == username)
        if record is None:
            raise PrincipalNotFound(f"{kind}:{username}")
        return record

    def list_principals(self, kind: str) -> List[PrincipalRecord]:
        t = self.table
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(select(t).where(t.c.kind == kind).order_by(t.c.id)).all()
        except SQLAlchemyError as e:
            raise IdentityStoreError(f"Principal listing failed: {e}") from e
        return [self._to_record(row) for row in rows]

    def create_principal(self, record: PrincipalRecord) -> PrincipalRecord:
        record = replace(record, updated_at=record.updated_at or int(time.time()))
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(self.table).values(
                        kind=record.kind,
                        id=record.id,
                        username=record.username,
                        password_hash=record.password_hash,
                        credential_version=record.credential_version,
                        invalid_before=record.invalid_before,
                        disabled=record.disabled,
                        is_super=record.is_super,
                        updated_at=record.updated_at,
                    )
                )
        except SQLAlchemyError as e:
            raise IdentityStoreError(f"Failed to create principal {record.kind}:{record.id}: {e}") from e
        return record

    def _update(self, kind: str, principal_id: int, **values) -> PrincipalRecord:
        t = self.table
        values["updated_at"] = int(time.time())
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    update(t).where(and_(t.c.kind == kind, t.c.id == principal_id)).values(**values)
                )
        except SQLAlchemyError as e:
            raise IdentityStoreError(f"Failed to update principal {kind}:{principal_id}: {e}") from e
        if result.rowcount == 0:
            raise PrincipalNotFound(f"{kind}:{principal_id}")
        return self.get_principal_by_id(kind, principal_id)

    def bump_credential_version(self, kind: str, principal_id: int) -> PrincipalRecord:
        return self._update(kind, principal_id, credential_version=self.table.c.credential_version + 1)

    def invalidate_sessions_before(self, kind: str, principal_id: int, cutoff: int) -> PrincipalRecord:
        return self._update(kind, principal_id, invalid_before=int(cutoff))

    def set_disabled(self, kind: str, principal_id: int, disabled: bool) -> PrincipalRecord:
        return self._update(kind, principal_id, disabled=bool(disabled))
