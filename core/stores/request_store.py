"""
Request store: creation and reads of service requests.

Status is written only through set_status(), and only from inside the
lifecycle engine's write scope. Requests are never deleted.
"""

import logging
from uuid import UUID, uuid4

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from core.audit import AuditLogger, AuditAction, AuditEntity
from core.errors import NotFound, InvalidState
from core.models import Request, RequestCreate, RequestStatus
from core.stores.write_scope import require_engine_scope
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class RequestStore:
    """Postgres-backed request persistence."""

    def __init__(self, postgres: PostgresClient, audit: AuditLogger):
        self.postgres = postgres
        self.audit = audit

    def transaction(self):
        """Transaction shared with the engagement store on the same database."""
        return self.postgres.transaction()

    def create(self, requester_id: UUID, data: RequestCreate) -> Request:
        """
        Create a new request.

        Args:
            requester_id: Homeowner submitting the request
            data: Request fields

        Returns:
            Created request in NEW status
        """
        request_id = uuid4()
        now = now_utc()

        transcript = data.advisory_transcript
        row = self.postgres.execute_returning(
            """
            INSERT INTO requests (
                id, requester_id, title, description, region,
                preferred_date, preferred_time, attached_image_refs,
                advisory_transcript, status, created_at, updated_at
            ) VALUES (
                %s, %s, %s, %s, %s,
                %s, %s, %s,
                %s, %s, %s, %s
            )
            RETURNING *
            """,
            (
                request_id, requester_id, data.title, data.description, data.region,
                data.preferred_date, data.preferred_time, data.attached_image_refs,
                Json(transcript) if transcript is not None else None,
                RequestStatus.NEW.value, now, now
            )
        )[0]

        request = Request.model_validate(row)

        self.audit.log_change(
            entity_type=AuditEntity.REQUEST,
            entity_id=request.id,
            action=AuditAction.CREATE,
            changes={"created": request.model_dump(mode="json")}
        )

        return request

    def get(self, request_id: UUID, for_update: bool = False) -> Request:
        """
        Get request by ID.

        Args:
            request_id: Request UUID
            for_update: Lock the row until the enclosing transaction ends

        Raises:
            NotFound: If no such request
        """
        query = "SELECT * FROM requests WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"

        row = self.postgres.execute_single(query, (request_id,))
        if row is None:
            raise NotFound("request", request_id)

        return Request.model_validate(row)

    def list_by_requester(self, requester_id: UUID, limit: int = 50) -> list[Request]:
        """List a requester's requests, newest first."""
        rows = self.postgres.execute(
            """
            SELECT * FROM requests
            WHERE requester_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (requester_id, limit)
        )

        return [Request.model_validate(row) for row in rows]

    def list_open(self, region: str | None = None, limit: int = 100) -> list[Request]:
        """
        List requests still open for providers (status NEW), newest first.

        Args:
            region: Only requests in this region, if given
            limit: Maximum results
        """
        if region is None:
            rows = self.postgres.execute(
                """
                SELECT * FROM requests
                WHERE status = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (RequestStatus.NEW.value, limit)
            )
        else:
            rows = self.postgres.execute(
                """
                SELECT * FROM requests
                WHERE status = %s AND region = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (RequestStatus.NEW.value, region, limit)
            )

        return [Request.model_validate(row) for row in rows]

    def set_status(
        self,
        request_id: UUID,
        status: RequestStatus,
        expected: RequestStatus | None = None
    ) -> Request:
        """
        Change request status. Lifecycle engine only.

        Args:
            request_id: Request UUID
            status: New status
            expected: If given, only write when the stored status equals it

        Raises:
            InvalidTransition: Called outside the engine's write scope
            NotFound: Unknown request
            InvalidState: Stored status differs from expected
        """
        require_engine_scope("Request status")

        current = self.get(request_id)
        if expected is not None and current.status != expected:
            raise InvalidState(
                f"Request {request_id} is {current.status.value}, expected {expected.value}",
                current_status=current.status.value,
            )

        rows = self.postgres.execute_returning(
            """
            UPDATE requests
            SET status = %s, updated_at = %s
            WHERE id = %s AND status = %s
            RETURNING *
            """,
            (status.value, now_utc(), request_id, current.status.value)
        )
        if not rows:
            latest = self.get(request_id)
            raise InvalidState(
                f"Request {request_id} changed concurrently",
                current_status=latest.status.value,
            )

        updated = Request.model_validate(rows[0])

        self.audit.log_change(
            entity_type=AuditEntity.REQUEST,
            entity_id=request_id,
            action=AuditAction.UPDATE,
            changes={"status": {"old": current.status.value, "new": status.value}}
        )

        return updated
