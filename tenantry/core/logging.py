from __future__ import annotations

import logging

from tenantry.core.config import get_settings
from tenantry.domain.context import maybe_current_context


LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s tenant_id=%(tenant_id)s "
    "role=%(role)s %(message)s"
)


class ContextLogFilter(logging.Filter):
    """Stamp records with the identity of the operation that emitted them."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = maybe_current_context()
        record.request_id = ctx.request_id if ctx else "-"
        record.tenant_id = (ctx.tenant_id or "-") if ctx else "-"
        record.role = ctx.user_role if ctx else "-"
        return True


def configure_logging(level: str | None = None) -> None:
    # Idempotent: scripts and tests may call this more than once.
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    for handler in root.handlers:
        if getattr(handler, "_tenantry", False):
            return
    handler = logging.StreamHandler()
    handler._tenantry = True  # type: ignore[attr-defined]
    handler.addFilter(ContextLogFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
