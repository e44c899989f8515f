"""Normalized shape every provider payload is translated into."""

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional


class ProviderOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PROCESSING = "processing"
    PENDING = "pending"  # provider has no verdict yet, keep polling
    REJECTED = "rejected"  # payload contradicts the payment, no state change
    IGNORED = "ignored"  # event type we do not act on


@dataclass
class ProviderUpdate:
    """A provider's report about one payment, stripped of provider vocabulary."""

    provider: str
    outcome: ProviderOutcome
    provider_status: str

    # How to find the payment: our id when the provider echoes it back,
    # otherwise the provider's own reference.
    payment_id: Optional[uuid.UUID] = None
    reference: Optional[str] = None

    # Payment columns to stamp (paystack_reference, stripe_payment_intent_id, ...)
    provenance: dict[str, Any] = field(default_factory=dict)

    amount: Optional[float] = None
    currency: Optional[str] = None
    error_message: Optional[str] = None
    note: Optional[str] = None

    # Raw payload stored under this key in the payment's metadata
    metadata_key: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    # Set for synchronous API checks; webhooks stamp "<provider>_webhook"
    actor: Optional[str] = None

    @property
    def confirmed_by(self) -> str:
        return self.actor or f"{self.provider}_webhook"


def parse_uuid(value: Any) -> Optional[uuid.UUID]:
    """Parse a payment id echoed back by a provider; None when absent or malformed."""
    if value is None or value == "":
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None
