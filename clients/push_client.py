"""
Expo push notification client.

Fire-and-forget delivery of {title, body, data} to a user's device. The
recipient's push token is resolved through an injected lookup so this client
knows nothing about where profiles live.
"""

import json
import logging
from typing import Callable
from uuid import UUID

import requests

logger = logging.getLogger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"


class PushDeliveryError(Exception):
    """Raised when the push service rejects or cannot receive a notification."""


class ExpoPushClient:
    """Send push notifications through the Expo push API."""

    def __init__(
        self,
        token_lookup: Callable[[UUID], str | None],
        access_token: str | None = None,
        push_url: str = EXPO_PUSH_URL,
        timeout_seconds: float = 10,
    ):
        """
        Args:
            token_lookup: fn(user_id) -> Expo push token, or None if the user has none
            access_token: Optional Expo access token for authenticated sends
            push_url: Expo push endpoint
            timeout_seconds: HTTP timeout
        """
        self.token_lookup = token_lookup
        self.access_token = access_token
        self.push_url = push_url
        self.timeout_seconds = timeout_seconds

    def send(self, recipient_id: UUID, title: str, body: str, data: dict[str, str] | None = None) -> bool:
        """
        Send one notification.

        Returns:
            True if sent, False if the recipient has no push token

        Raises:
            PushDeliveryError: On connection failure or a rejected ticket
        """
        token = self.token_lookup(recipient_id)
        if not token:
            logger.debug(f"No push token for user {recipient_id}; skipping")
            return False

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        payload = {
            "to": token,
            "title": title,
            "body": body,
            "data": data or {},
            "sound": "default",
        }

        try:
            response = requests.post(
                self.push_url,
                data=json.dumps(payload),
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.RequestException as e:
            raise PushDeliveryError(f"Connection failed: {e}")

        if response.status_code != 200:
            raise PushDeliveryError(f"Push service returned {response.status_code}: {response.text}")

        try:
            ticket = response.json().get("data", {})
        except json.JSONDecodeError:
            raise PushDeliveryError("Invalid response from push service")

        if isinstance(ticket, dict) and ticket.get("status") == "error":
            raise PushDeliveryError(f"Push rejected: {ticket.get('message', 'unknown error')}")

        return True
