"""
Security audit logging.

Authentication failures, access denials and authorization changes are
written as ``SECURITY_AUDIT: {json}`` lines on the ``security.audit`` logger.
Authorization changes are also persisted to the audit store when one is
configured; a failing store is logged and does not undo the change.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from starlette.concurrency import run_in_threadpool

from authgate.core.audit import AuditStoreError, AuthzAuditEntry, AuthzAuditStore
from authgate.utils.helpers import truncate_string

logger = logging.getLogger(__name__)


class SecurityAuditLogger:
    """Security audit logger for authentication and authorization events."""

    def __init__(self, store: Optional[AuthzAuditStore] = None, enabled: bool = True):
        self.logger = logging.getLogger("security.audit")
        self.store = store
        self.enabled = enabled

    def _emit(self, level: int, event: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        event.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        self.logger.log(level, f"SECURITY_AUDIT: {json.dumps(event, default=str)}")

    async def log_authentication_failure(
        self,
        reason: str,
        ip_address: str,
        user_agent: str,
        path: str,
        request_id: str = "",
    ):
        """Log a rejected token or header."""
        self._emit(logging.WARNING, {
            "event_type": "auth.token.rejected",
            "reason": reason,
            "ip_address": ip_address,
            "user_agent": truncate_string(user_agent, 200),
            "path": path,
            "request_id": request_id,
            "severity": "WARNING",
        })

    async def log_authorization_failure(
        self,
        principal: str,
        resource: str,
        action: str,
        ip_address: str,
        request_id: str = "",
    ):
        """Log authorization failure."""
        self._emit(logging.WARNING, {
            "event_type": "authz.access.denied",
            "principal": principal,
            "resource": resource,
            "action": action,
            "ip_address": ip_address,
            "request_id": request_id,
            "severity": "WARNING",
        })

    async def log_rate_limited(self, identity: str, rule: str, retry_after: int, request_id: str = ""):
        self._emit(logging.INFO, {
            "event_type": "ratelimit.rejected",
            "identity": identity,
            "rule": rule,
            "retry_after": retry_after,
            "request_id": request_id,
            "severity": "INFO",
        })

    async def log_authz_change(self, entry: AuthzAuditEntry):
        """
        Record an authorization change.

        Args:
            entry: What changed, who changed it and for whom
        """
        event = {"event_type": f"authz.{entry.action}", "severity": "INFO"}
        event.update({k: v for k, v in entry.to_dict().items() if v not in (None, "", {})})
        self._emit(logging.INFO, event)

        if self.store is None:
            return
        try:
            await run_in_threadpool(self.store.record, entry)
        except AuditStoreError as e:
            logger.error(f"Failed to persist audit entry {entry.action}: {e}")
