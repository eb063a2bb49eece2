from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantry.domain.context import maybe_current_context
from tenantry.domain.models import AuditEvent


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["secret", "password", "token", "ciphertext", "key"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub secret-bearing fields while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def _actor_type(role: str | None) -> str:
    # System roles are attributed to the system even when they inherit a user id.
    if role and role.startswith("SYSTEM_"):
        return "system"
    return "user" if role else "anonymous"


async def record_event(
    *,
    session: AsyncSession,
    event_type: str,
    outcome: str,
    tenant_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    best_effort: bool = True,
) -> None:
    """Add an audit row to ``session`` attributed to the current carrier.

    The row joins the caller's transaction; nothing is committed here. With
    ``best_effort`` a flush failure is logged instead of raised.
    """
    ctx = maybe_current_context()
    actor_role = ctx.user_role if ctx else None
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        tenant_id=tenant_id if tenant_id is not None else (ctx.tenant_id if ctx else None),
        actor_type=_actor_type(actor_role),
        actor_id=ctx.user_id if ctx else None,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=ctx.request_id if ctx else None,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    try:
        # Savepoint keeps a failed audit insert from poisoning the outer transaction.
        async with session.begin_nested():
            session.add(event)
    except SQLAlchemyError as exc:
        level = logger.warning if best_effort else logger.error
        level(
            "audit_event_write_failed event_type=%s request_id=%s",
            event_type,
            event.request_id,
            exc_info=exc,
        )
        if not best_effort:
            raise
