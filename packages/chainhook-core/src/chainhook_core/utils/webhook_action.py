import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from ..models import ChainEvent

logger = logging.getLogger(__name__)

USER_AGENT = "chainhook-core/0.1.0"


class WebhookAction:
    """Action handler delivering matched events to an HTTP endpoint.

    Payloads are signed with HMAC-SHA256 when a secret is configured so the
    receiver can authenticate them.
    """

    SIGNATURE_HEADER: str = "X-Webhook-Signature"

    def __init__(self, url: str, secret: str | None = None, timeout: float = 10.0) -> None:
        """Initialize the webhook action.

        Args:
            url: Endpoint receiving the POST requests
            secret: Optional shared secret for payload signatures
            timeout: Request timeout in seconds
        """
        self.url: str = url
        self.secret: str | None = secret
        self.timeout: float = timeout

    def build_payload(self, data: dict[str, Any]) -> dict[str, Any]:
        """Build the JSON payload for an action invocation.

        Args:
            data: Action data with ``event`` and ``predicate_id`` entries
        """
        event: ChainEvent = data["event"]
        return {
            "event": event.kind,
            "predicate_id": data.get("predicate_id"),
            "data": event.to_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def sign(self, body: bytes) -> str:
        """Hex HMAC-SHA256 of the request body."""
        if not self.secret:
            raise ValueError("Webhook secret is not configured")
        return hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()

    async def __call__(self, data: dict[str, Any]) -> int:
        """Deliver one matched event.

        Returns:
            HTTP status code of the response

        Raises:
            httpx.HTTPStatusError: If the endpoint answers with an error status
            httpx.HTTPError: If the request cannot be delivered
        """
        payload = self.build_payload(data)
        body = json.dumps(payload, separators=(",", ":"), default=str).encode()

        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self.secret:
            headers[self.SIGNATURE_HEADER] = self.sign(body)

        async with httpx.AsyncClient() as client:
            logger.debug(f"Posting {payload['event']} event to {self.url}")
            response: httpx.Response = await client.post(
                self.url, content=body, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()

        logger.info(f"Webhook delivered {payload['event']} event to {self.url} ({response.status_code})")
        return response.status_code
