"""
Engagement store: persistence for request/provider pairings.

Deliberately rule-free apart from the accept-once constraint, which lives in
the database as a partial unique index on (request_id, provider_id) for
non-cancelled rows. All other invariants are enforced by the lifecycle engine.
"""

import logging
from typing import Any
from uuid import UUID, uuid4

import psycopg2.errors

from clients.postgres_client import PostgresClient
from core.audit import AuditLogger, AuditAction, AuditEntity, compute_changes
from core.errors import AlreadyEngaged, NotFound
from core.models import Engagement, EngagementUpdate, EngagementStatus
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_UPDATABLE_COLUMNS = {
    "status", "quote_amount", "scheduled_date", "scheduled_time",
    "requester_confirmed", "provider_confirmed", "cancel_reason", "cancelled_by",
}


class EngagementStore:
    """Postgres-backed engagement persistence."""

    def __init__(self, postgres: PostgresClient, audit: AuditLogger):
        self.postgres = postgres
        self.audit = audit

    def transaction(self):
        """Transaction shared with the request store on the same database."""
        return self.postgres.transaction()

    def create(self, request_id: UUID, requester_id: UUID, provider_id: UUID) -> Engagement:
        """
        Insert a new engagement in PENDING_QUOTE status.

        The insert itself is the check: a concurrent or repeated claim by the
        same provider hits the unique index and is reported as AlreadyEngaged.

        Raises:
            AlreadyEngaged: An active engagement exists for (request, provider)
        """
        engagement_id = uuid4()
        now = now_utc()

        try:
            row = self.postgres.execute_returning(
                """
                INSERT INTO engagements (
                    id, request_id, requester_id, provider_id, status,
                    requester_confirmed, provider_confirmed,
                    created_at, updated_at
                ) VALUES (
                    %s, %s, %s, %s, %s,
                    FALSE, FALSE,
                    %s, %s
                )
                RETURNING *
                """,
                (
                    engagement_id, request_id, requester_id, provider_id,
                    EngagementStatus.PENDING_QUOTE.value, now, now
                )
            )[0]
        except psycopg2.errors.UniqueViolation:
            logger.info(f"Duplicate engagement rejected for request {request_id}, provider {provider_id}")
            raise AlreadyEngaged(request_id, provider_id)

        engagement = Engagement.model_validate(row)

        self.audit.log_change(
            entity_type=AuditEntity.ENGAGEMENT,
            entity_id=engagement.id,
            action=AuditAction.CREATE,
            changes={"created": engagement.model_dump(mode="json")}
        )

        return engagement

    def get(self, engagement_id: UUID, for_update: bool = False) -> Engagement:
        """
        Get engagement by ID.

        Args:
            engagement_id: Engagement UUID
            for_update: Lock the row until the enclosing transaction ends

        Raises:
            NotFound: If no such engagement
        """
        query = "SELECT * FROM engagements WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"

        row = self.postgres.execute_single(query, (engagement_id,))
        if row is None:
            raise NotFound("engagement", engagement_id)

        return Engagement.model_validate(row)

    def find_active(self, request_id: UUID, provider_id: UUID) -> Engagement | None:
        """The non-cancelled engagement for (request, provider), if any."""
        row = self.postgres.execute_single(
            """
            SELECT * FROM engagements
            WHERE request_id = %s AND provider_id = %s AND status <> %s
            """,
            (request_id, provider_id, EngagementStatus.CANCELLED.value)
        )
        return Engagement.model_validate(row) if row else None

    def list_by_provider(self, provider_id: UUID, limit: int = 100) -> list[Engagement]:
        """List a provider's engagements, newest first."""
        rows = self.postgres.execute(
            """
            SELECT * FROM engagements
            WHERE provider_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (provider_id, limit)
        )
        return [Engagement.model_validate(row) for row in rows]

    def list_by_request(self, request_id: UUID) -> list[Engagement]:
        """List every engagement (any status) on a request, oldest first."""
        rows = self.postgres.execute(
            """
            SELECT * FROM engagements
            WHERE request_id = %s
            ORDER BY created_at ASC
            """,
            (request_id,)
        )
        return [Engagement.model_validate(row) for row in rows]

    def update(self, engagement_id: UUID, data: EngagementUpdate | dict[str, Any]) -> Engagement:
        """
        Write the given fields. No business rules are checked here.

        Only fields explicitly set on `data` are written, so a field can be
        set to NULL by passing None.

        Raises:
            NotFound: If no such engagement
        """
        if isinstance(data, dict):
            data = EngagementUpdate(**data)

        current = self.get(engagement_id)

        updates = data.model_dump(exclude_unset=True)
        valid_updates = {k: v for k, v in updates.items() if k in _UPDATABLE_COLUMNS}
        if not valid_updates:
            return current

        set_parts = []
        params = []
        for field, value in valid_updates.items():
            if hasattr(value, "value"):
                value = value.value
            set_parts.append(f"{field} = %s")
            params.append(value)

        set_parts.append("updated_at = %s")
        params.append(now_utc())
        params.append(engagement_id)

        row = self.postgres.execute_returning(
            f"""
            UPDATE engagements
            SET {', '.join(set_parts)}
            WHERE id = %s
            RETURNING *
            """,
            tuple(params)
        )[0]

        updated = Engagement.model_validate(row)

        changes = compute_changes(
            current.model_dump(mode="json"),
            updated.model_dump(mode="json")
        )
        if changes:
            self.audit.log_change(
                entity_type=AuditEntity.ENGAGEMENT,
                entity_id=engagement_id,
                action=AuditAction.UPDATE,
                changes=changes
            )

        return updated
