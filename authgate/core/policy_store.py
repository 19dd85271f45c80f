"""
Durable storage for policy rules.

Rules are flat tuples ``(ptype, v0, v1, v2)``:
- ``("p", subject, object, action)``: allow rule
- ``("g", member, group)``: membership or inheritance edge
- ``("role", name)``: the role exists, even with no rules attached

The table name is chosen by the host application. Every write runs in its
own transaction; the batch variants commit all rows or none. Batch inserts
skip rows that are already stored.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Iterable, List, Sequence, Set, Tuple

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    and_,
    delete,
    insert,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from authgate.core.errors import PolicyStoreError

logger = logging.getLogger(__name__)

PolicyRow = Tuple[str, ...]

PTYPE_POLICY = "p"
PTYPE_GROUPING = "g"
PTYPE_ROLE = "role"

MAX_FIELDS = 3
COLUMNS = ("ptype", "v0", "v1", "v2")


def _pad(row: Sequence[str]) -> Tuple[str, str, str, str]:
    if not row or len(row) > MAX_FIELDS + 1:
        raise PolicyStoreError(f"Malformed policy row: {row!r}")
    fields = list(row[1:]) + [""] * (MAX_FIELDS - len(row) + 1)
    return (row[0], fields[0], fields[1], fields[2])


def _trim(ptype: str, v0: str, v1: str, v2: str) -> PolicyRow:
    fields = [v0 or "", v1 or "", v2 or ""]
    while fields and fields[-1] == "":
        fields.pop()
    return (ptype, *fields)


class PolicyStore(ABC):
    """Persistence contract consumed by the policy engine."""

    @abstractmethod
    def load_all(self) -> List[PolicyRow]:
        """Return every stored row as ``(ptype, fields...)``."""

    @abstractmethod
    def insert(self, row: PolicyRow) -> bool:
        """Insert a row. Returns False if it was already present."""

    @abstractmethod
    def delete(self, row: PolicyRow) -> bool:
        """Delete a row. Returns False if nothing matched."""

    @abstractmethod
    def insert_many(self, rows: Iterable[PolicyRow]) -> None:
        """Insert rows in a single transaction, skipping rows already stored."""

    @abstractmethod
    def delete_many(self, rows: Iterable[PolicyRow]) -> None:
        """Delete rows in a single transaction."""

    def ensure_schema(self) -> None:
        """Create backing storage if needed."""

    def ping(self) -> bool:
        return True


class SQLPolicyStore(PolicyStore):
    """Policy store backed by a single SQL table."""

    def __init__(self, engine: Engine, table_name: str = "authz_rule"):
        self._engine = engine
        self._metadata = MetaData()
        self.table = Table(
            table_name,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("ptype", String(16), nullable=False),
            Column("v0", String(255), nullable=False, default=""),
            Column("v1", String(255), nullable=False, default=""),
            Column("v2", String(255), nullable=False, default=""),
            UniqueConstraint("ptype", "v0", "v1", "v2", name=f"uq_{table_name}_rule"),
        )

    def ensure_schema(self) -> None:
        try:
            self._metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise PolicyStoreError(f"Failed to create policy table: {e}") from e

    def load_all(self) -> List[PolicyRow]:
        t = self.table
        query = select(t.c.ptype, t.c.v0, t.c.v1, t.c.v2).order_by(t.c.id)
        try:
            with self._engine.connect() as conn:
                return [_trim(*record) for record in conn.execute(query)]
        except SQLAlchemyError as e:
            raise PolicyStoreError(f"Failed to load policy rules: {e}") from e

    def insert(self, row: PolicyRow) -> bool:
        ptype, v0, v1, v2 = _pad(row)
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(self.table).values(ptype=ptype, v0=v0, v1=v1, v2=v2))
            return True
        except IntegrityError:
            logger.debug(f"Policy row already stored: {row}")
            return False
        except SQLAlchemyError as e:
            raise PolicyStoreError(f"Failed to insert policy row {row}: {e}") from e

    def delete(self, row: PolicyRow) -> bool:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(delete(self.table).where(self._match(row)))
            return result.rowcount > 0
        except SQLAlchemyError as e:
            raise PolicyStoreError(f"Failed to delete policy row {row}: {e}") from e

    def insert_many(self, rows: Iterable[PolicyRow]) -> None:
        padded = list(dict.fromkeys(_pad(row) for row in rows))
        if not padded:
            return
        try:
            try:
                self._insert_missing(padded)
            except IntegrityError:
                # a concurrent writer stored some of the rows after our read
                logger.debug(f"Retrying batch insert of {len(padded)} policy rows")
                self._insert_missing(padded)
        except SQLAlchemyError as e:
            raise PolicyStoreError(f"Failed to insert {len(padded)} policy rows: {e}") from e

    def _insert_missing(self, padded: List[Tuple[str, str, str, str]]) -> None:
        with self._engine.begin() as conn:
            missing = [
                dict(zip(COLUMNS, row))
                for row in padded
                if conn.execute(select(self.table.c.id).where(self._match(row))).first() is None
            ]
            if missing:
                conn.execute(insert(self.table), missing)

    def delete_many(self, rows: Iterable[PolicyRow]) -> None:
        rows = list(rows)
        if not rows:
            return
        try:
            with self._engine.begin() as conn:
                for row in rows:
                    conn.execute(delete(self.table).where(self._match(row)))
        except SQLAlchemyError as e:
            raise PolicyStoreError(f"Failed to delete {len(rows)} policy rows: {e}") from e

    def ping(self) -> bool:
        try:
            with self._engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Policy store ping failed: {e}")
            return False

    def _match(self, row: PolicyRow):
        ptype, v0, v1, v2 = _pad(row)
        t = self.table
        return and_(t.c.ptype == ptype, t.c.v0 == v0, t.c.v1 == v1, t.c.v2 == v2)


class InMemoryPolicyStore(PolicyStore):
    """Non-durable store for single-process use and tests."""

    def __init__(self, rows: Iterable[PolicyRow] = ()):
        self._lock = threading.Lock()
        self._rows: List[PolicyRow] = []
        self._index: Set[PolicyRow] = set()
        for row in rows:
            self.insert(row)

    def load_all(self) -> List[PolicyRow]:
        with self._lock:
            return list(self._rows)

    def insert(self, row: PolicyRow) -> bool:
        row = _trim(*_pad(row))
        with self._lock:
            if row in self._index:
                return False
            self._rows.append(row)
            self._index.add(row)
            return True

    def delete(self, row: PolicyRow) -> bool:
        row = _trim(*_pad(row))
        with self._lock:
            if row not in self._index:
                return False
            self._index.discard(row)
            self._rows.remove(row)
            return True

    def insert_many(self, rows: Iterable[PolicyRow]) -> None:
        rows = [_trim(*_pad(row)) for row in rows]
        with self._lock:
            for row in rows:
                if row not in self._index:
                    self._rows.append(row)
                    self._index.add(row)

    def delete_many(self, rows: Iterable[PolicyRow]) -> None:
        rows = [_trim(*_pad(row)) for row in rows]
        with self._lock:
            for row in rows:
                if row in self._index:
                    self._index.discard(row)
                    self._rows.remove(row)
