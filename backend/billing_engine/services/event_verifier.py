"""Authenticity verification of inbound provider webhook events."""

import json
from abc import ABC, abstractmethod
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from billing_engine.core.config import settings
from billing_engine.core.errors import UnauthenticatedEventError, ValidationError
from billing_engine.schemas.billing import ProviderEventPayload
from billing_engine.services.webhook_signing import verify_hmac_signature


def parse_event(payload: bytes) -> ProviderEventPayload:
    """Parse an already verified raw body."""
    try:
        body = json.loads(payload)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")
    try:
        return ProviderEventPayload.model_validate(body)
    except PydanticValidationError as exc:
        raise ValidationError("Malformed provider event", errors=exc.errors()) from None


class EventVerifier(ABC):
    """Turns a raw signed request body into a verified event."""

    @abstractmethod
    def verify(self, payload: bytes, signature: str | None) -> ProviderEventPayload:
        """Verify ``payload`` against ``signature`` and parse it.

        Raises:
            UnauthenticatedEventError: If the signature is missing or invalid.
            ValidationError: If the verified body is not a provider event.
        """
        pass  # pragma: no cover


class HmacEventVerifier(EventVerifier):
    """HMAC-SHA256 over the raw body, hex encoded (optionally ``sha256=``-prefixed)."""

    def __init__(self, secret: str | None = None):
        self.secret = secret if secret is not None else settings.billing_webhook_secret

    def verify(self, payload: bytes, signature: str | None) -> ProviderEventPayload:
        if not signature or not verify_hmac_signature(payload, signature, self.secret):
            raise UnauthenticatedEventError("Invalid webhook signature")
        return parse_event(payload)


class StripeEventVerifier(EventVerifier):
    """Verifies ``Stripe-Signature`` headers with the Stripe SDK."""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None):
        self.api_key = api_key or settings.stripe_api_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self._stripe: Any = None

    @property
    def stripe(self) -> Any:
        """Lazy-load stripe module."""
        if self._stripe is None:
            try:
                import stripe

                stripe.api_key = self.api_key
                self._stripe = stripe
            except ImportError as e:
                raise ImportError("stripe package not installed. Run: pip install stripe") from e
        return self._stripe

    def verify(self, payload: bytes, signature: str | None) -> ProviderEventPayload:
        if not self.webhook_secret or not signature:
            raise UnauthenticatedEventError("Missing webhook signature")
        try:
            self.stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, self.stripe.error.SignatureVerificationError):
            raise UnauthenticatedEventError("Invalid webhook signature") from None
        return parse_event(payload)


def get_event_verifier() -> EventVerifier:
    """Build the verifier selected by ``webhook_provider``."""
    if settings.webhook_provider == "stripe":
        return StripeEventVerifier()
    return HmacEventVerifier()
