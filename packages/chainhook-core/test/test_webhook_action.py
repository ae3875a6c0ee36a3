#!/usr/bin/env python3
"""Tests for the webhook action.

The HTTP client is mocked; no requests leave the test process.
"""

import hashlib
import hmac
import json
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from chainhook_core.models import MintEvent
from chainhook_core.utils.webhook_action import USER_AGENT, WebhookAction


class TestWebhookAction(unittest.IsolatedAsyncioTestCase):
    """Test cases for WebhookAction."""

    def setUp(self):
        """Set up test fixtures."""
        self.event = MintEvent(
            timestamp=1700000000000,
            block_height=42,
            block_hash="0xblock42",
            tx_hash="0xmint",
            token_id="7",
            recipient="SP2",
            contract_address="SP1.badges",
        )
        self.data = {"event": self.event, "predicate_id": "badge-mints"}

    def _mock_client(self, mock_client_class, status_code=200):
        mock_client = AsyncMock()
        mock_response = MagicMock()
        mock_response.status_code = status_code
        mock_response.raise_for_status = MagicMock()
        mock_client.post = AsyncMock(return_value=mock_response)
        mock_client_class.return_value.__aenter__.return_value = mock_client
        return mock_client, mock_response

    def test_build_payload(self):
        payload = WebhookAction("https://hooks.example.com").build_payload(self.data)

        assert payload["event"] == "mint"
        assert payload["predicate_id"] == "badge-mints"
        assert payload["data"] == self.event.to_dict()
        assert payload["timestamp"].endswith("+00:00")

    def test_sign_requires_secret(self):
        with pytest.raises(ValueError, match="secret is not configured"):
            WebhookAction("https://hooks.example.com").sign(b"{}")

    @patch('chainhook_core.utils.webhook_action.httpx.AsyncClient')
    async def test_post_signed_payload(self, mock_client_class):
        """Test that payloads are posted with an HMAC signature."""
        mock_client, _ = self._mock_client(mock_client_class, status_code=202)
        action = WebhookAction("https://hooks.example.com/chain", secret="s3cret", timeout=5)

        status = await action(self.data)

        assert status == 202
        mock_client.post.assert_called_once()
        args, kwargs = mock_client.post.call_args
        assert args == ("https://hooks.example.com/chain",)
        assert kwargs["timeout"] == 5

        body = kwargs["content"]
        expected = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        assert kwargs["headers"][WebhookAction.SIGNATURE_HEADER] == expected
        assert kwargs["headers"]["User-Agent"] == USER_AGENT
        assert json.loads(body)["data"]["token_id"] == "7"

    @patch('chainhook_core.utils.webhook_action.httpx.AsyncClient')
    async def test_post_without_secret(self, mock_client_class):
        """Test that no signature header is sent without a secret."""
        mock_client, _ = self._mock_client(mock_client_class)

        await WebhookAction("https://hooks.example.com/chain")(self.data)

        headers = mock_client.post.call_args[1]["headers"]
        assert WebhookAction.SIGNATURE_HEADER not in headers
        assert headers["Content-Type"] == "application/json"

    @patch('chainhook_core.utils.webhook_action.httpx.AsyncClient')
    async def test_error_status_raises(self, mock_client_class):
        """Test that error responses propagate to the caller."""
        _, mock_response = self._mock_client(mock_client_class, status_code=500)
        mock_response.raise_for_status.side_effect = httpx.HTTPStatusError(
            "Server error",
            request=MagicMock(),
            response=MagicMock(),
        )

        with pytest.raises(httpx.HTTPStatusError):
            await WebhookAction("https://hooks.example.com/chain")(self.data)

    @patch('chainhook_core.utils.webhook_action.httpx.AsyncClient')
    async def test_connection_error_raises(self, mock_client_class):
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))
        mock_client_class.return_value.__aenter__.return_value = mock_client

        with pytest.raises(httpx.ConnectError):
            await WebhookAction("https://hooks.example.com/chain")(self.data)
