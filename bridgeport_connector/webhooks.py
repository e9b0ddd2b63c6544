"""Webhook signature verification and the inbound webhook gateway."""

import base64
import hashlib
import hmac
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .clock import Clock, SystemClock
from .exceptions import WebhookError
from .metrics import IntegrationMetrics
from .types import SignatureScheme, WebhookPayload

if TYPE_CHECKING:
    from .base import ConnectorContract

logger = logging.getLogger(__name__)

EVENT_TYPE_FIELDS = ("type", "event", "event_type", "eventType", "subscriptionType")


class WebhookVerifier:
    """
    Verifies webhook signatures and prevents replay attacks.

    Supports:
    - HMAC-SHA256 over the raw body, hex or base64 encoded
    - Timestamped "{timestamp}.{body}" signatures with a replay window
    - Multi-scheme headers ("t=<ts>,v1=<sig>,v0=<sig>")

    Every comparison is constant time.
    """

    def __init__(
        self,
        secret: str | bytes,
        replay_window_seconds: int = 180,  # 3 minutes
        clock: Clock | None = None,
    ):
        self.secret = secret.encode() if isinstance(secret, str) else secret
        self.replay_window_seconds = replay_window_seconds
        self.clock = clock or SystemClock()

    def compute_signature(self, body: bytes, encoding: str = "hex") -> str:
        """HMAC-SHA256 of the raw body."""
        digest = hmac.new(self.secret, body, hashlib.sha256)
        if encoding == "base64":
            return base64.b64encode(digest.digest()).decode()
        return digest.hexdigest()

    def sign(
        self,
        body: bytes,
        scheme: SignatureScheme = SignatureScheme.BODY,
        timestamp: str | int | None = None,
        encoding: str = "hex",
    ) -> str:
        """Signature header value a provider using `scheme` would send, without prefix."""
        if scheme == SignatureScheme.BODY:
            return self.compute_signature(body, encoding)
        if timestamp is None:
            timestamp = int(self.clock.now().timestamp())
        signature = self.compute_signature(f"{timestamp}.".encode() + body)
        if scheme == SignatureScheme.V1_MULTI:
            return f"t={timestamp},v1={signature}"
        return signature

    def matches(
        self,
        body: bytes,
        signature: str | None,
        encoding: str = "hex",
        prefix: str | None = None,
    ) -> bool:
        """
        Pure check of a body/signature pair. Never raises.

        Args:
            body: Raw request body
            signature: Signature as sent by the provider
            encoding: "hex" or "base64"
            prefix: Optional scheme prefix to strip, e.g. "sha256="
        """
        if not signature or not self.secret:
            return False
        candidate = signature.strip()
        if prefix and candidate.startswith(prefix):
            candidate = candidate[len(prefix) :]
        expected = self.compute_signature(body, encoding)
        return hmac.compare_digest(expected.encode(), candidate.encode())

    def verify(
        self,
        body: bytes,
        signature: str | None,
        scheme: SignatureScheme = SignatureScheme.BODY,
        timestamp: str | int | None = None,
        encoding: str = "hex",
        prefix: str | None = None,
        provider: str | None = None,
    ) -> bool:
        """
        Check one delivery under a provider's signature scheme. Never raises.

        Args:
            body: Raw request body
            signature: Signature header value
            scheme: How the provider signs deliveries
            timestamp: Timestamp header value; V1_MULTI falls back to the
                header's own "t=" entry
            encoding: Digest encoding for the BODY scheme
            prefix: Scheme prefix to strip for BODY and TIMESTAMPED
            provider: Provider name for log lines
        """
        if scheme == SignatureScheme.BODY:
            return self.matches(body, signature, encoding=encoding, prefix=prefix)
        if not signature or not self.secret:
            return False

        try:
            if scheme == SignatureScheme.TIMESTAMPED:
                if timestamp is None:
                    raise WebhookError("Missing webhook timestamp", provider=provider)
                candidate = signature.strip()
                if prefix and candidate.startswith(prefix):
                    candidate = candidate[len(prefix) :]
                return self.verify_hmac_sha256(timestamp, body, candidate, provider)
            return self.verify_signature_header(timestamp, body, signature, provider)
        except WebhookError as e:
            logger.warning("%s webhook signature rejected: %s", provider or "unknown", e.message)
            return False

    def verify_hmac_sha256(
        self,
        timestamp: str | int,
        body: bytes,
        signature: str,
        provider: str | None = None,
    ) -> bool:
        """
        Verify HMAC-SHA256 signature with timestamp.

        Common pattern used by Stripe, Slack, etc.

        Raises:
            WebhookError: If verification fails
        """
        try:
            ts = int(timestamp)
        except (ValueError, TypeError) as e:
            raise WebhookError(
                "Invalid timestamp format",
                provider=provider,
            ) from e

        now = int(self.clock.now().timestamp())
        if abs(now - ts) > self.replay_window_seconds:
            raise WebhookError(
                f"Timestamp outside replay window ({self.replay_window_seconds}s)",
                provider=provider,
            )

        signed_payload = f"{timestamp}.".encode() + body
        computed_signature = hmac.new(
            self.secret,
            signed_payload,
            hashlib.sha256,
        ).hexdigest()

        if not hmac.compare_digest(computed_signature.encode(), signature.encode()):
            raise WebhookError(
                "HMAC signature mismatch",
                provider=provider,
            )

        return True

    def verify_signature_header(
        self,
        timestamp: str | int | None,
        body: bytes,
        signature_header: str,
        provider: str | None = None,
    ) -> bool:
        """
        Verify signature header with multiple schemes.

        Format: "t=<timestamp>,v1=<signature>,v0=<signature>". An explicit
        `timestamp` wins over the header's "t" entry.

        Raises:
            WebhookError: If no valid signatures found
        """
        schemes = {}
        for part in signature_header.split(","):
            if "=" in part:
                version, sig = part.split("=", 1)
                schemes[version.strip()] = sig.strip()

        if timestamp is None:
            timestamp = schemes.pop("t", None)
        else:
            schemes.pop("t", None)

        if not schemes:
            raise WebhookError(
                "No signatures found in header",
                provider=provider,
            )
        if timestamp is None:
            raise WebhookError(
                "No timestamp in signature header",
                provider=provider,
            )

        for version, signature in schemes.items():
            if version == "v1":
                try:
                    return self.verify_hmac_sha256(timestamp, body, signature, provider)
                except WebhookError:
                    continue

        raise WebhookError(
            "No valid signature scheme matched",
            provider=provider,
        )


def extract_signature_from_headers(
    headers: dict[str, Any],
    signature_key: str = "X-Signature",
    timestamp_key: str = "X-Timestamp",
) -> tuple[str | None, str | None]:
    """
    Extract signature and timestamp from webhook headers.

    Returns:
        Tuple of (signature, timestamp); either may be None
    """
    headers_lower = {k.lower(): v for k, v in headers.items()}

    signature = headers_lower.get(signature_key.lower())
    timestamp = headers_lower.get(timestamp_key.lower())

    return signature, timestamp


def extract_event_type(data: dict[str, Any]) -> str | None:
    """First event-type looking field of a provider event body."""
    for field in EVENT_TYPE_FIELDS:
        value = data.get(field)
        if isinstance(value, str) and value:
            return value
    return None


@dataclass
class WebhookOutcome:
    """What the gateway tells the HTTP layer to answer."""

    status_code: int
    accepted: bool
    provider: str
    events: list[str]
    handled: int = 0
    ignored: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "accepted" if self.accepted else "rejected",
            "provider": self.provider,
            "events": self.events,
            "handled": self.handled,
            "ignored": self.ignored,
            "message": self.message,
        }


WebhookTargets = Callable[[str], Sequence["ConnectorContract"]]


class WebhookGateway:
    """
    Authenticates inbound webhooks and dispatches them to connectors.

    Stateless per request:
    1. read the raw body and the provider's signature header
    2. check the HMAC against the webhook secret from configuration; any
       mismatch is a 401 with no handler invoked
    3. parse the body into typed events and route each by event type; unknown
       types are logged and ignored, still answering 200 so the provider does
       not retry
    4. handlers (and the cache invalidation they do) finish before `receive`
       returns

    `targets(provider)` returns the connectors that should see the event: the
    live sessions for that provider, or a provider-level connector. An empty
    sequence means the provider is unknown.
    """

    def __init__(self, targets: WebhookTargets, metrics: IntegrationMetrics | None = None):
        self.targets = targets
        self.metrics = metrics

    async def receive(
        self,
        provider: str,
        headers: dict[str, str],
        raw_body: bytes,
        query: dict[str, str] | None = None,
    ) -> WebhookOutcome:
        connectors = list(self.targets(provider))
        if not connectors:
            # unknown names stay out of the provider label
            logger.warning("Webhook for unknown provider %s", provider)
            return WebhookOutcome(404, False, provider, [], message="Unknown provider")

        outcome = await self._dispatch(provider, connectors, headers, raw_body, query)
        if self.metrics:
            self.metrics.track_webhook(provider, outcome.status_code)
        return outcome

    async def _dispatch(
        self,
        provider: str,
        connectors: list["ConnectorContract"],
        headers: dict[str, str],
        raw_body: bytes,
        query: dict[str, str] | None,
    ) -> WebhookOutcome:
        primary = connectors[0]
        header = primary.webhook_signature_header
        signature, _ = extract_signature_from_headers(headers, signature_key=header)
        envelope = WebhookPayload(headers=dict(headers), body=raw_body, query=dict(query or {}))

        if not signature or not primary.validate_webhook_signature(envelope, signature):
            logger.warning(
                "Rejected %s webhook: %s",
                provider,
                "missing signature header" if not signature else "signature mismatch",
            )
            return WebhookOutcome(401, False, provider, [], message="Invalid webhook signature")

        try:
            payloads = self.parse(envelope)
        except WebhookError as e:
            logger.warning("Rejected %s webhook: %s", provider, e.message)
            return WebhookOutcome(400, False, provider, [], message=e.message)

        outcome = WebhookOutcome(200, True, provider, [p.event or "unknown" for p in payloads])
        for payload in payloads:
            if not primary.handles_event(payload.event):
                logger.info("Ignoring unhandled %s webhook event %s", provider, payload.event)
                outcome.ignored += 1
                continue

            for connector in connectors:
                try:
                    await connector.handle_webhook(payload)
                except Exception:
                    logger.exception("%s webhook handler failed for %s", provider, payload.event)
                    outcome.status_code = 500
                    outcome.accepted = False
                    outcome.message = "Webhook handler failed"
                    return outcome
            outcome.handled += 1

        outcome.message = "Webhook processed"
        return outcome

    @staticmethod
    def parse(envelope: WebhookPayload) -> list[WebhookPayload]:
        """
        Split a verified body into one payload per event.

        Some providers batch events as a JSON array; each element becomes its
        own payload sharing the envelope's headers and query.

        Raises:
            WebhookError: If the body is not a JSON object or array of objects
        """
        try:
            body = json.loads(envelope.body or b"null")
        except (ValueError, UnicodeDecodeError) as e:
            raise WebhookError(f"Invalid JSON payload: {e}") from e

        events = body if isinstance(body, list) else [body]
        if not events or not all(isinstance(event, dict) for event in events):
            raise WebhookError("Webhook body must be a JSON object or a list of objects")

        return [
            envelope.model_copy(update={"event": extract_event_type(event), "data": event})
            for event in events
        ]
