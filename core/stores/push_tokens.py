"""Lookup of device push tokens stored on user profiles."""

from uuid import UUID

from clients.postgres_client import PostgresClient


class PushTokenDirectory:
    """Reads profiles.push_token. Profiles themselves are owned by the identity service."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def get_push_token(self, user_id: UUID) -> str | None:
        return self.postgres.execute_scalar(
            "SELECT push_token FROM profiles WHERE id = %s",
            (user_id,)
        )
