"""Derivation and validation of physical schema identifiers.

Identifiers cannot be sent as bound parameters, so every schema name that is
interpolated into DDL or a search path must pass ``validate_schema_name``
first. The allow-list is deliberately narrow: lowercase ASCII letters, digits
and underscores, in the ``<prefix>_<slug>_<suffix>`` shape.
"""

from __future__ import annotations

import re
from uuid import uuid4

from tenantry.core.config import PG_IDENTIFIER_MAX, get_settings
from tenantry.core.errors import InvalidSchemaNameError


_NON_ALNUM_RUN = re.compile(r"[^a-z0-9]+")


def tenant_schema_pattern(prefix: str | None = None) -> re.Pattern[str]:
    resolved = prefix or get_settings().tenant_schema_prefix
    return re.compile(rf"^{re.escape(resolved)}_[a-z0-9_]+_[a-z0-9]+$")


def slugify(name: str, max_length: int | None = None) -> str:
    # Lowercase and collapse each non-alphanumeric run to one underscore; trimmed to fit identifiers.
    limit = max_length or get_settings().tenant_slug_max_length
    slug = _NON_ALNUM_RUN.sub("_", name.strip().lower()).strip("_")
    slug = slug[:limit].rstrip("_")
    if not slug:
        raise ValueError(f"Cannot derive a slug from organization name {name!r}")
    return slug


def schema_suffix(tenant_id: str | None = None, length: int | None = None) -> str:
    # Use the first group of the tenant uuid when available so the schema is traceable to its row.
    size = length or get_settings().tenant_schema_suffix_length
    source = (tenant_id or uuid4().hex).split("-")[0]
    suffix = re.sub(r"[^a-z0-9]", "", source.lower())[:size]
    if not suffix:
        suffix = uuid4().hex[:size]
    return suffix


def derive_schema_name(slug: str, suffix: str | None = None) -> str:
    # The slug absorbs any truncation; the suffix is always kept whole.
    settings = get_settings()
    resolved_suffix = suffix or schema_suffix()
    head = f"{settings.tenant_schema_prefix}_"
    tail = f"_{resolved_suffix}"
    room = PG_IDENTIFIER_MAX - len(head) - len(tail)
    body = slug[:room].rstrip("_")
    if not body:
        raise ValueError("Slug leaves no room for a schema name")
    name = f"{head}{body}{tail}"
    validate_schema_name(name, allow_shared=False)
    return name


def is_shared_schema(name: str) -> bool:
    return name == get_settings().shared_schema


def validate_schema_name(name: str | None, *, allow_shared: bool = True) -> str:
    # Gatekeeper for every identifier that is interpolated into SQL.
    if not name or not isinstance(name, str):
        raise InvalidSchemaNameError(f"Invalid schema name: {name!r}")
    if allow_shared and is_shared_schema(name):
        return name
    if len(name) > PG_IDENTIFIER_MAX or not tenant_schema_pattern().match(name):
        raise InvalidSchemaNameError(f"Invalid schema name: {name!r}")
    return name


def quote_ident(name: str, *, allow_shared: bool = True) -> str:
    return f'"{validate_schema_name(name, allow_shared=allow_shared)}"'


def search_path_for(schema_name: str) -> str:
    # Tenant schema first, shared schema as fallback for catalog and helper functions.
    shared = get_settings().shared_schema
    if is_shared_schema(schema_name):
        return shared
    return f"{quote_ident(schema_name)}, {shared}"
