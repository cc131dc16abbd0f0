"""
Audit trail for request and engagement mutations.

Stores write here inside the same transaction as the change itself, so an
entry exists if and only if the change committed. Entries are append-only
and carry the acting user (NULL for system actions such as a cascade).
"""

from enum import Enum
from uuid import UUID, uuid4
from typing import Any

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from utils.user_context import peek_current_user_id
from utils.timezone import now_utc


class AuditAction(Enum):
    """Type of change made to an entity."""

    CREATE = "create"
    UPDATE = "update"


class AuditEntity(str, Enum):
    """Audited entity types."""

    REQUEST = "request"
    ENGAGEMENT = "engagement"


def compute_changes(
    old: dict[str, Any],
    new: dict[str, Any],
    exclude_fields: set[str] | None = None
) -> dict[str, dict[str, Any]]:
    """
    Field-level diff of two model_dump(mode="json") snapshots.

    Returns:
        {field: {"old": old_val, "new": new_val}} for changed fields; empty
        if nothing but excluded fields (default {"updated_at"}) changed.
    """
    exclude = exclude_fields or {"updated_at"}
    changes = {}

    for key in set(old.keys()) | set(new.keys()):
        if key in exclude:
            continue

        old_val = old.get(key)
        new_val = new.get(key)
        if old_val != new_val:
            changes[key] = {"old": old_val, "new": new_val}

    return changes


class AuditLogger:
    """
    Audit trail writer and reader.

    Usage:
        audit = AuditLogger(postgres)
        audit.log_change(
            AuditEntity.ENGAGEMENT,
            engagement.id,
            AuditAction.UPDATE,
            compute_changes(old.model_dump(mode="json"), new.model_dump(mode="json")),
        )
    """

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def log_change(
        self,
        entity_type: AuditEntity | str,
        entity_id: UUID,
        action: AuditAction,
        changes: dict[str, Any],
        user_id: UUID | None = None
    ) -> None:
        """
        Append one entry.

        Args:
            changes: {"created": {...}} for CREATE, {field: {"old", "new"}} for UPDATE
            user_id: Acting user; defaults to the current context, which may be empty
        """
        if user_id is None:
            user_id = peek_current_user_id()

        self.postgres.execute(
            """
            INSERT INTO audit_log (id, user_id, entity_type, entity_id, action, changes, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                uuid4(),
                user_id,
                AuditEntity(entity_type).value,
                entity_id,
                action.value,
                Json(changes),
                now_utc()
            )
        )

    def get_entity_history(
        self,
        entity_type: AuditEntity | str,
        entity_id: UUID
    ) -> list[dict[str, Any]]:
        """All entries for one entity, newest first."""
        return self.postgres.execute(
            """
            SELECT id, user_id, entity_type, entity_id, action, changes, created_at
            FROM audit_log
            WHERE entity_type = %s AND entity_id = %s
            ORDER BY created_at DESC
            """,
            (AuditEntity(entity_type).value, entity_id)
        )

    def status_trail(self, entity_type: AuditEntity | str, entity_id: UUID) -> list[str]:
        """
        Statuses the entity has held, oldest first.

        Rebuilt from the creation snapshot and every status change; used to
        check that a request only ever moved forward.
        """
        trail = []
        for entry in reversed(self.get_entity_history(entity_type, entity_id)):
            changes = entry["changes"]
            if entry["action"] == AuditAction.CREATE.value:
                status = changes.get("created", {}).get("status")
            else:
                status = changes.get("status", {}).get("new")
            if status is not None:
                trail.append(status)
        return trail
