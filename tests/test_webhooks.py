"""Tests for webhook verification and the webhook gateway."""

import json
import time
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest

from bridgeport_connector.clock import ManualClock
from bridgeport_connector.exceptions import WebhookError
from bridgeport_connector.metrics import IntegrationMetrics
from bridgeport_connector.providers import HUBSPOT, LINKEDIN, HttpConnector
from bridgeport_connector.types import ConnectorConfig, SignatureScheme, WebhookPayload
from bridgeport_connector.webhooks import (
    WebhookGateway,
    WebhookVerifier,
    extract_event_type,
    extract_signature_from_headers,
)

SECRET = "test-secret-key"

BILLING = HUBSPOT.model_copy(update={
    "name": "billing",
    "display_name": "Billing",
    "signature_header": "stripe-signature",
    "signature_scheme": SignatureScheme.V1_MULTI,
})

CHAT = HUBSPOT.model_copy(update={
    "name": "chat",
    "display_name": "Chat",
    "signature_header": "x-chat-signature",
    "signature_scheme": SignatureScheme.TIMESTAMPED,
    "signature_prefix": "v0=",
    "timestamp_header": "x-chat-request-timestamp",
})


class TestWebhookVerifier:
    """Tests for WebhookVerifier class."""

    def test_matches_hex_signature(self):
        """Test plain body HMAC in hex."""
        verifier = WebhookVerifier(secret=SECRET)
        body = b'{"event": "contact.creation"}'

        assert verifier.matches(body, verifier.compute_signature(body)) is True

    def test_matches_base64_with_prefix(self):
        """Test base64 encoding and a scheme prefix."""
        verifier = WebhookVerifier(secret=SECRET)
        body = b'{"type": "PROFILE_UPDATE"}'
        signature = "hmacsha256=" + verifier.compute_signature(body, encoding="base64")

        assert verifier.matches(body, signature, encoding="base64", prefix="hmacsha256=") is True

    def test_tampered_body_rejected(self):
        """Test a changed body no longer matches."""
        verifier = WebhookVerifier(secret=SECRET)
        signature = verifier.compute_signature(b'{"amount": 10}')

        assert verifier.matches(b'{"amount": 1000}', signature) is False

    def test_tampered_signature_rejected(self):
        """Test a changed signature no longer matches."""
        verifier = WebhookVerifier(secret=SECRET)
        body = b'{"amount": 10}'
        signature = verifier.compute_signature(body)
        tampered = ("0" if signature[0] != "0" else "1") + signature[1:]

        assert verifier.matches(body, tampered) is False

    def test_matches_never_raises(self):
        """Test missing or malformed signatures just fail."""
        verifier = WebhookVerifier(secret=SECRET)

        assert verifier.matches(b"{}", None) is False
        assert verifier.matches(b"{}", "") is False
        assert verifier.matches(b"{}", "not-hex-at-all") is False

    def test_verify_hmac_sha256_valid(self):
        """Test valid timestamped HMAC signature."""
        verifier = WebhookVerifier(secret=SECRET)
        timestamp = str(int(time.time()))
        body = b'{"event": "test"}'
        signature = WebhookVerifier(secret=SECRET).compute_signature(f"{timestamp}.".encode() + body)

        assert verifier.verify_hmac_sha256(timestamp, body, signature, provider="hubspot") is True

    def test_verify_hmac_sha256_invalid_signature(self):
        """Test invalid HMAC signature."""
        verifier = WebhookVerifier(secret=SECRET)
        timestamp = str(int(time.time()))

        with pytest.raises(WebhookError, match="HMAC signature mismatch"):
            verifier.verify_hmac_sha256(timestamp, b"{}", "invalid_signature", provider="hubspot")

    def test_verify_hmac_sha256_replay_attack(self):
        """Test replay attack prevention."""
        verifier = WebhookVerifier(secret=SECRET, replay_window_seconds=180)
        old_timestamp = str(int(time.time()) - 300)

        with pytest.raises(WebhookError, match="replay window"):
            verifier.verify_hmac_sha256(old_timestamp, b"{}", "any", provider="hubspot")

    def test_verify_hmac_sha256_bad_timestamp(self):
        """Test non-numeric timestamps."""
        verifier = WebhookVerifier(secret=SECRET)

        with pytest.raises(WebhookError, match="Invalid timestamp"):
            verifier.verify_hmac_sha256("yesterday", b"{}", "any")

    def test_verify_signature_header(self):
        """Test multi-scheme header format."""
        verifier = WebhookVerifier(secret=SECRET)
        timestamp = str(int(time.time()))
        body = b'{"event": "test"}'
        v1 = verifier.compute_signature(f"{timestamp}.".encode() + body)

        assert verifier.verify_signature_header(timestamp, body, f"v0=old,v1={v1}") is True
        with pytest.raises(WebhookError, match="No signatures"):
            verifier.verify_signature_header(timestamp, body, "garbage")
        with pytest.raises(WebhookError, match="No valid signature scheme"):
            verifier.verify_signature_header(timestamp, body, "v1=wrong")

    def test_signature_header_carries_timestamp(self):
        """Test the "t=" entry supplies the timestamp when none is passed."""
        verifier = WebhookVerifier(secret=SECRET)
        timestamp = int(time.time())
        body = b'{"type": "invoice.paid"}'
        header = verifier.sign(body, SignatureScheme.V1_MULTI, timestamp)

        assert header.startswith(f"t={timestamp},v1=")
        assert verifier.verify_signature_header(None, body, header) is True
        with pytest.raises(WebhookError, match="No timestamp"):
            verifier.verify_signature_header(None, body, "v1=abc")


class TestVerifySchemes:
    """Tests for WebhookVerifier.verify across signature schemes."""

    @pytest.fixture
    def clock(self):
        return ManualClock(wall_start=datetime(2024, 3, 1, tzinfo=UTC))

    @pytest.fixture
    def verifier(self, clock):
        return WebhookVerifier(SECRET, clock=clock)

    def test_body_scheme(self, verifier):
        """Test the default scheme is the plain body check."""
        body = b'{"event": "test"}'

        assert verifier.verify(body, verifier.sign(body)) is True
        assert verifier.verify(body, "bad") is False

    def test_timestamped_scheme(self, verifier, clock):
        """Test timestamp header plus prefixed signature."""
        body = b'{"event": "test"}'
        timestamp = int(clock.now().timestamp())
        signature = "v0=" + verifier.sign(body, SignatureScheme.TIMESTAMPED, timestamp)

        assert verifier.verify(
            body, signature, scheme=SignatureScheme.TIMESTAMPED, timestamp=str(timestamp), prefix="v0="
        ) is True
        assert verifier.verify(body, signature, scheme=SignatureScheme.TIMESTAMPED, prefix="v0=") is False

    def test_timestamped_replay_rejected(self, verifier, clock):
        """Test deliveries older than the replay window fail without raising."""
        body = b'{"event": "test"}'
        timestamp = int(clock.now().timestamp())
        signature = verifier.sign(body, SignatureScheme.TIMESTAMPED, timestamp)

        clock.advance(600)

        assert verifier.verify(body, signature, scheme=SignatureScheme.TIMESTAMPED, timestamp=timestamp) is False

    def test_v1_multi_scheme(self, verifier):
        """Test a "t=...,v1=..." header signed with the clock's time."""
        body = b'{"type": "invoice.paid"}'
        header = verifier.sign(body, SignatureScheme.V1_MULTI)

        assert verifier.verify(body, header, scheme=SignatureScheme.V1_MULTI) is True
        assert verifier.verify(b"{}", header, scheme=SignatureScheme.V1_MULTI) is False
        assert verifier.verify(body, "garbage", scheme=SignatureScheme.V1_MULTI) is False


def test_extract_signature_from_headers():
    """Test case-insensitive header lookup."""
    headers = {"X-HubSpot-Signature": "abc", "X-Timestamp": "123"}

    assert extract_signature_from_headers(headers, "x-hubspot-signature") == ("abc", "123")
    assert extract_signature_from_headers({}, "x-hubspot-signature") == (None, None)


def test_extract_event_type():
    """Test event type field precedence."""
    assert extract_event_type({"subscriptionType": "contact.creation"}) == "contact.creation"
    assert extract_event_type({"type": "PROFILE_UPDATE", "event": "other"}) == "PROFILE_UPDATE"
    assert extract_event_type({"type": 7}) is None


class TestWebhookGateway:
    """Tests for WebhookGateway class."""

    @pytest.fixture
    def connector(self, vault, governor, fake_api):
        config = ConnectorConfig(provider="hubspot", user_id="user-1", webhook_secret=SECRET)
        return HttpConnector(HUBSPOT, config, vault, governor=governor, http_client=fake_api.client())

    @pytest.fixture
    def gateway(self, connector):
        return WebhookGateway(lambda provider: [connector] if provider == "hubspot" else [])

    @staticmethod
    def signed(body, header="x-hubspot-signature"):
        return {header: WebhookVerifier(SECRET).compute_signature(body)}

    @pytest.mark.asyncio
    async def test_unknown_provider(self, gateway):
        """Test webhooks for unregistered providers are 404."""
        outcome = await gateway.receive("salesforce", {}, b"{}")

        assert outcome.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_signature(self, gateway, connector):
        """Test an unsigned webhook is rejected before any handler runs."""
        with patch.object(connector, "handle_webhook", AsyncMock()) as handler:
            outcome = await gateway.receive("hubspot", {}, b'{"subscriptionType": "contact.creation"}')

        assert outcome.status_code == 401
        assert outcome.message == "Invalid webhook signature"
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_bad_signature(self, gateway, connector):
        """Test a wrong signature is a 401 and never reaches the handler."""
        body = b'{"subscriptionType": "contact.creation"}'

        with patch.object(connector, "handle_webhook", AsyncMock()) as handler:
            outcome = await gateway.receive("hubspot", {"x-hubspot-signature": "0" * 64}, body)

        assert outcome.status_code == 401
        assert outcome.to_dict()["status"] == "rejected"
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_signed_but_not_json(self, gateway):
        """Test a verified but unparseable body is a 400."""
        body = b"not json"

        outcome = await gateway.receive("hubspot", self.signed(body), body)

        assert outcome.status_code == 400
        assert "Invalid JSON" in outcome.message

    @pytest.mark.asyncio
    async def test_unhandled_event_is_ignored(self, gateway):
        """Test unknown event types are acknowledged so the provider won't retry."""
        body = b'{"subscriptionType": "ticket.creation"}'

        outcome = await gateway.receive("hubspot", self.signed(body), body)

        assert outcome.status_code == 200
        assert outcome.ignored == 1
        assert outcome.handled == 0

    @pytest.mark.asyncio
    async def test_handled_event_invalidates_cache(self, gateway, connector):
        """Test a contact event drops cached contacts before returning."""
        connector.cache.set("contacts", {"id": "1"}, sub_id="1")
        connector.cache.set("deals", {"id": "9"}, sub_id="9")
        body = json.dumps({"subscriptionType": "contact.propertyChange", "objectId": 1}).encode()

        outcome = await gateway.receive("hubspot", self.signed(body), body)

        assert outcome.status_code == 200
        assert outcome.handled == 1
        assert outcome.message == "Webhook processed"
        assert not connector.cache.contains("contacts", "1")
        assert connector.cache.contains("deals", "9")

    @pytest.mark.asyncio
    async def test_batched_events(self, gateway, connector):
        """Test a JSON array is dispatched one event at a time."""
        connector.cache.set("companies", {"id": "5"}, sub_id="5")
        body = json.dumps([
            {"subscriptionType": "company.creation", "objectId": 5},
            {"subscriptionType": "ticket.deletion", "objectId": 6},
        ]).encode()

        outcome = await gateway.receive("hubspot", self.signed(body), body)

        assert outcome.events == ["company.creation", "ticket.deletion"]
        assert outcome.handled == 1
        assert outcome.ignored == 1
        assert len(connector.cache) == 0

    @pytest.mark.asyncio
    async def test_handler_failure_is_500(self, gateway, connector):
        """Test a failing handler makes the provider retry."""
        body = b'{"subscriptionType": "deal.creation"}'

        with patch.object(connector, "handle_webhook", AsyncMock(side_effect=RuntimeError("db down"))):
            outcome = await gateway.receive("hubspot", self.signed(body), body)

        assert outcome.status_code == 500
        assert outcome.accepted is False

    @pytest.mark.asyncio
    async def test_outcomes_counted_by_status(self, connector):
        """Test deliveries are counted per provider and response status."""
        metrics = IntegrationMetrics()
        gateway = WebhookGateway(lambda provider: [connector] if provider == "hubspot" else [], metrics=metrics)
        body = b'{"subscriptionType": "ticket.creation"}'

        await gateway.receive("hubspot", self.signed(body), body)
        await gateway.receive("hubspot", self.signed(body), body)
        await gateway.receive("hubspot", {"x-hubspot-signature": "0" * 64}, body)
        await gateway.receive("salesforce", {}, body)

        assert metrics.snapshot() == {
            "hubspot": {
                "api_calls": {},
                "rate_limited": 0,
                "sync_passes": {},
                "sync_items": {},
                "webhooks": {"200": 2, "401": 1},
            }
        }

    @pytest.mark.asyncio
    async def test_linkedin_prefixed_base64_signature(self, vault, governor, fake_api):
        """Test providers with their own signature scheme."""
        config = ConnectorConfig(provider="linkedin", user_id="user-1", webhook_secret=SECRET)
        connector = HttpConnector(LINKEDIN, config, vault, governor=governor, http_client=fake_api.client())
        connector.cache.set("profile", {"sub": "abc"})
        gateway = WebhookGateway(lambda provider: [connector])
        body = b'{"type": "PROFILE_UPDATE"}'
        signature = "hmacsha256=" + WebhookVerifier(SECRET).compute_signature(body)

        outcome = await gateway.receive("linkedin", {"LinkedIn-Signature": signature}, body)

        assert outcome.status_code == 200
        assert outcome.handled == 1
        assert not connector.cache.contains("profile")

    @pytest.mark.asyncio
    async def test_v1_multi_scheme_provider(self, vault, governor, fake_api, clock):
        """Test a "t=...,v1=..." provider is verified against the connector clock."""
        config = ConnectorConfig(provider="billing", user_id="user-1", webhook_secret=SECRET)
        connector = HttpConnector(BILLING, config, vault, governor=governor, http_client=fake_api.client())
        connector.cache.set("contacts", {"id": "1"}, sub_id="1")
        gateway = WebhookGateway(lambda provider: [connector])
        body = b'{"type": "contact.creation"}'
        header = WebhookVerifier(SECRET, clock=clock).sign(body, SignatureScheme.V1_MULTI)

        outcome = await gateway.receive("billing", {"Stripe-Signature": header}, body)

        assert outcome.status_code == 200
        assert outcome.handled == 1
        assert len(connector.cache) == 0

        clock.advance(3600)
        replayed = await gateway.receive("billing", {"Stripe-Signature": header}, body)
        assert replayed.status_code == 401

    @pytest.mark.asyncio
    async def test_timestamped_scheme_provider(self, vault, governor, fake_api, clock):
        """Test the timestamp is read from the provider's timestamp header."""
        config = ConnectorConfig(provider="chat", user_id="user-1", webhook_secret=SECRET)
        connector = HttpConnector(CHAT, config, vault, governor=governor, http_client=fake_api.client())
        gateway = WebhookGateway(lambda provider: [connector])
        body = b'{"type": "deal.creation"}'
        timestamp = str(int(clock.now().timestamp()))
        signature = "v0=" + WebhookVerifier(SECRET).sign(body, SignatureScheme.TIMESTAMPED, timestamp)

        signed = {"X-Chat-Signature": signature, "X-Chat-Request-Timestamp": timestamp}
        outcome = await gateway.receive("chat", signed, body)
        assert outcome.status_code == 200

        unsigned_time = await gateway.receive("chat", {"X-Chat-Signature": signature}, body)
        assert unsigned_time.status_code == 401



class TestWebhookParsing:
    """Tests for WebhookGateway.parse."""

    def test_single_object(self):
        """Test one object body."""
        payloads = WebhookGateway.parse(WebhookPayload(body=b'{"event": "cohort.updated", "id": 3}'))

        assert len(payloads) == 1
        assert payloads[0].event == "cohort.updated"
        assert payloads[0].data == {"event": "cohort.updated", "id": 3}

    @pytest.mark.parametrize("body", [b"", b"[]", b"42", b'["a"]'])
    def test_rejects_non_objects(self, body):
        """Test bodies that hold no events."""
        with pytest.raises(WebhookError):
            WebhookGateway.parse(WebhookPayload(body=body))
