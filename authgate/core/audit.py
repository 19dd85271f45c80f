"""
Persistent audit trail for authorization changes.

Every role or rule mutation made through the administration API is recorded
with the operator, the target and the request ID so it can be searched
later. Entries are append-only.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import (
    BigInteger,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from authgate.core.errors import AuthGatewayError

logger = logging.getLogger(__name__)

ACTION_ROLE_CREATE = "role_create"
ACTION_ROLE_DELETE = "role_delete"
ACTION_POLICY_GRANT = "policy_grant"
ACTION_POLICY_REVOKE = "policy_revoke"
ACTION_ROLE_INHERIT = "role_inherit"
ACTION_ROLE_DISINHERIT = "role_disinherit"
ACTION_ADMIN_ROLES_SET = "admin_roles_set"
ACTION_SESSIONS_REVOKE = "sessions_revoke"


class AuditStoreError(AuthGatewayError):
    """Audit entries could not be written or read."""


@dataclass
class AuthzAuditEntry:
    operator_admin_id: int
    action: str
    operator_username: str = ""
    target_admin_id: Optional[int] = None
    target_username: str = ""
    role: str = ""
    object: str = ""
    method: str = ""
    request_id: str = ""
    detail: Dict[str, Any] = field(default_factory=dict)
    created_at: int = 0
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuditFilter:
    page: int = 1
    page_size: int = 20
    operator_admin_id: Optional[int] = None
    target_admin_id: Optional[int] = None
    action: str = ""
    role: str = ""
    object: str = ""
    method: str = ""
    created_from: Optional[int] = None
    created_to: Optional[int] = None


class AuthzAuditStore:
    """SQL-backed audit entries."""

    def __init__(self, engine: Engine, table_name: str = "authz_audit_logs"):
        self._engine = engine
        self._metadata = MetaData()
        self.table = Table(
            table_name,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("operator_admin_id", Integer, nullable=False, index=True),
            Column("operator_username", String(100), nullable=False, default=""),
            Column("target_admin_id", Integer, nullable=True, index=True),
            Column("target_username", String(100), nullable=False, default=""),
            Column("action", String(100), nullable=False, index=True),
            Column("role", String(120), nullable=False, default=""),
            Column("object", String(255), nullable=False, default=""),
            Column("method", String(20), nullable=False, default=""),
            Column("request_id", String(64), nullable=False, default=""),
            Column("detail", Text, nullable=True),
            Column("created_at", BigInteger, nullable=False, index=True),
        )

    def ensure_schema(self) -> None:
        try:
            self._metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise AuditStoreError(f"Failed to create audit table: {e}") from e

    def record(self, entry: AuthzAuditEntry) -> Optional[AuthzAuditEntry]:
        """Append an entry. Entries without operator or action are ignored."""
        if not entry.operator_admin_id or not entry.action.strip():
            return None

        entry.created_at = entry.created_at or int(time.time())
        values = {
            "operator_admin_id": entry.operator_admin_id,
            "operator_username": entry.operator_username.strip(),
            "target_admin_id": entry.target_admin_id,
            "target_username": entry.target_username.strip(),
            "action": entry.action.strip(),
            "role": entry.role.strip(),
            "object": entry.object.strip(),
            "method": entry.method.strip().upper(),
            "request_id": entry.request_id.strip()[:64],
            "detail": json.dumps(entry.detail, sort_keys=True) if entry.detail else None,
            "created_at": entry.created_at,
        }
        try:
            with self._engine.begin() as conn:
                result = conn.execute(insert(self.table).values(**values))
                entry.id = result.inserted_primary_key[0]
        except SQLAlchemyError as e:
            raise AuditStoreError(f"Failed to record audit entry: {e}") from e
        return entry

    def list(self, query: AuditFilter) -> Tuple[List[AuthzAuditEntry], int]:
        """Return one page of entries, newest first, and the total count."""
        t = self.table
        conditions = []
        if query.operator_admin_id:
            conditions.append(t.c.operator_admin_id == query.operator_admin_id)
        if query.target_admin_id:
            conditions.append(t.c.target_admin_id == query.target_admin_id)
        for name in ("action", "role", "object"):
            value = getattr(query, name).strip()
            if value:
                conditions.append(t.c[name] == value)
        if query.method.strip():
            conditions.append(t.c.method == query.method.strip().upper())
        if query.created_from is not None:
            conditions.append(t.c.created_at >= query.created_from)
        if query.created_to is not None:
            conditions.append(t.c.created_at <= query.created_to)

        where = and_(*conditions) if conditions else None
        page = max(query.page, 1)
        page_size = min(max(query.page_size, 1), 100)

        rows_query = select(t).order_by(t.c.id.desc()).limit(page_size).offset((page - 1) * page_size)
        count_query = select(func.count()).select_from(t)
        if where is not None:
            rows_query = rows_query.where(where)
            count_query = count_query.where(where)

        try:
            with self._engine.connect() as conn:
                total = conn.execute(count_query).scalar_one()
                rows = conn.execute(rows_query).all()
        except SQLAlchemyError as e:
            raise AuditStoreError(f"Failed to list audit entries: {e}") from e

        return [self._to_entry(row) for row in rows], total

    @staticmethod
    def _to_entry(row) -> AuthzAuditEntry:
        return AuthzAuditEntry(
            id=row.id,
            operator_admin_id=row.operator_admin_id,
            operator_username=row.operator_username,
            target_admin_id=row.target_admin_id,
            target_username=row.target_username,
            action=row.action,
            role=row.role,
            object=row.object,
            method=row.method,
            request_id=row.request_id,
            detail=json.loads(row.detail) if row.detail else {},
            created_at=row.created_at,
        )
