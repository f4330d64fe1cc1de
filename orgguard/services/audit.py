from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.core.config import get_settings
from orgguard.domain.audit_events import (
    ACTION_CATEGORIES,
    ActionCategory,
    ActionType,
    AuditPayload,
    parse_audit_payload,
)
from orgguard.domain.models import AuditLogEntry
from orgguard.domain.permissions import Permission
from orgguard.domain.results import OperationResult, invalid_argument, permission_denied, success, unavailable
from orgguard.persistence.db import SessionLocal
from orgguard.persistence.repos import audit as audit_repo
from orgguard.services.authority import Actor, resolve_grant


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


@dataclass(frozen=True)
class PendingAudit:
    # Describes one audit row before the writer stamps actor and impersonation.
    action_type: ActionType
    payload: AuditPayload
    target_table: str | None = None
    target_id: str | None = None
    target_organisation_id: str | None = None


@dataclass(frozen=True)
class AuditLogFilters:
    action_category: ActionCategory | None = None
    actor_id: str | None = None
    target_organisation_id: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None


@dataclass(frozen=True)
class AuditLogPage:
    items: list[AuditLogEntry]
    total: int
    limit: int
    offset: int

    @property
    def next_offset(self) -> int | None:
        end = self.offset + len(self.items)
        return end if end < self.total else None


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_values(value: Any) -> Any:
    # Recursively scrub credential-like fields while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_values(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_values(item) for item in value]
    return value


def build_entry(
    pending_audit: PendingAudit,
    *,
    actor_id: str,
    impersonating_user_id: str | None,
) -> AuditLogEntry:
    old_values, new_values = pending_audit.payload.columns()
    return AuditLogEntry(
        actor_id=actor_id,
        action_type=pending_audit.action_type.value,
        action_category=ACTION_CATEGORIES[pending_audit.action_type].value,
        target_table=pending_audit.target_table,
        target_id=pending_audit.target_id,
        target_organisation_id=pending_audit.target_organisation_id,
        old_values=sanitize_values(old_values) if old_values is not None else None,
        new_values=sanitize_values(new_values) if new_values is not None else None,
        impersonating_user_id=impersonating_user_id,
    )


async def _commit_entry(session: AsyncSession, entry: AuditLogEntry) -> None:
    session.add(entry)
    await session.commit()


async def record_action(
    pending_audit: PendingAudit,
    *,
    actor_id: str,
    impersonating_user_id: str | None = None,
    session: AsyncSession | None = None,
    best_effort: bool = True,
) -> bool:
    # Append and commit one audit row; failures are logged and never undo a committed action.
    entry = build_entry(pending_audit, actor_id=actor_id, impersonating_user_id=impersonating_user_id)
    try:
        if session is None:
            async with SessionLocal() as audit_session:
                try:
                    await _commit_entry(audit_session, entry)
                except SQLAlchemyError:
                    await audit_session.rollback()
                    raise
        else:
            try:
                await _commit_entry(session, entry)
            except SQLAlchemyError:
                await session.rollback()
                raise
    except SQLAlchemyError as exc:
        logger.error(
            "audit_log_write_failed action_type=%s actor_id=%s target_id=%s target_organisation_id=%s",
            pending_audit.action_type.value,
            actor_id,
            pending_audit.target_id,
            pending_audit.target_organisation_id,
            exc_info=exc,
        )
        if not best_effort:
            raise
        return False
    return True


def entry_payload(entry: AuditLogEntry) -> AuditPayload:
    return parse_audit_payload(entry.action_type, entry.old_values, entry.new_values)


async def query_audit_log(
    session: AsyncSession,
    *,
    actor: Actor,
    filters: AuditLogFilters | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> OperationResult[AuditLogPage]:
    settings = get_settings()
    resolved_limit = settings.audit_default_page_size if limit is None else limit
    filters = filters or AuditLogFilters()
    filter_kwargs = {
        "action_category": filters.action_category.value if filters.action_category else None,
        "actor_id": filters.actor_id,
        "target_organisation_id": filters.target_organisation_id,
        "created_from": filters.created_from,
        "created_to": filters.created_to,
    }
    try:
        admin = await resolve_grant(session, actor.user_id, Permission.VIEW_AUDIT_LOGS)
        if admin is None:
            return permission_denied(Permission.VIEW_AUDIT_LOGS.value)
        if resolved_limit < 1 or resolved_limit > settings.audit_max_page_size:
            return invalid_argument(
                f"limit must be between 1 and {settings.audit_max_page_size}", limit=resolved_limit
            )
        if offset < 0:
            return invalid_argument("offset must be non-negative", offset=offset)
        items = await audit_repo.list_entries(
            session, offset=offset, limit=resolved_limit, **filter_kwargs
        )
        total = await audit_repo.count_entries(session, **filter_kwargs)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("audit_log_query_failed actor=%s", actor.user_id, exc_info=exc)
        return unavailable()
    return success(AuditLogPage(items=items, total=total, limit=resolved_limit, offset=offset))
