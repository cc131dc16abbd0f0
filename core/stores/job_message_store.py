"""
Job message store: chat between the requester and provider of an engagement.

Messages are append-only; the only mutation is stamping read_at when the
recipient reads them. Who may post or read is decided by JobChatService.
"""

import logging
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient
from core.models import JobMessage
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class JobMessageStore:
    """Postgres-backed job message persistence."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def create(self, engagement_id: UUID, sender_id: UUID, content: str) -> JobMessage:
        row = self.postgres.execute_returning(
            """
            INSERT INTO job_messages (id, engagement_id, sender_id, content, created_at)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (uuid4(), engagement_id, sender_id, content, now_utc())
        )[0]
        return JobMessage.model_validate(row)

    def list_by_engagement(self, engagement_id: UUID, limit: int = 200) -> list[JobMessage]:
        """Most recent `limit` messages, oldest first."""
        rows = self.postgres.execute(
            """
            SELECT * FROM (
                SELECT * FROM job_messages
                WHERE engagement_id = %s
                ORDER BY created_at DESC
                LIMIT %s
            ) recent
            ORDER BY created_at ASC
            """,
            (engagement_id, limit)
        )
        return [JobMessage.model_validate(row) for row in rows]

    def mark_read(self, engagement_id: UUID, reader_id: UUID) -> int:
        """
        Stamp every unread message the reader received on this engagement.

        Returns:
            Number of messages newly marked read
        """
        rows = self.postgres.execute_returning(
            """
            UPDATE job_messages
            SET read_at = %s
            WHERE engagement_id = %s AND sender_id <> %s AND read_at IS NULL
            RETURNING id
            """,
            (now_utc(), engagement_id, reader_id)
        )
        return len(rows)

    def unread_counts(self, user_id: UUID) -> dict[UUID, int]:
        """Unread messages addressed to the user, per engagement. Engagements with none are omitted."""
        rows = self.postgres.execute(
            """
            SELECT m.engagement_id, COUNT(*) AS unread
            FROM job_messages m
            JOIN engagements e ON e.id = m.engagement_id
            WHERE (e.requester_id = %s OR e.provider_id = %s)
              AND m.sender_id <> %s
              AND m.read_at IS NULL
            GROUP BY m.engagement_id
            """,
            (user_id, user_id, user_id)
        )
        return {UUID(str(row["engagement_id"])): row["unread"] for row in rows}
