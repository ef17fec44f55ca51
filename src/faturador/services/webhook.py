"""Inbound NFe.io status notifications.

The provider signs the raw request body with HMAC-SHA256 using the shared
webhook secret and sends the hex digest in ``X-NFeIO-Signature`` (older
deliveries use ``X-Signature``). The body carries the same status
vocabulary as polling, so it is parsed into a ProviderSnapshot and handed
to the reconciler.
"""

from __future__ import annotations

import hashlib
import hmac
import json

from faturador.models.snapshot import ProviderSnapshot
from faturador.services.exceptions import ValidationError


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of *signature* against the body's HMAC.

    Accepts an optional ``sha256=`` prefix on the header value.
    """
    if not signature:
        return False
    received = signature.strip().lower()
    if received.startswith("sha256="):
        received = received[len("sha256="):]
    return hmac.compare_digest(received, compute_signature(body, secret))


def parse_event(body: bytes) -> ProviderSnapshot:
    """Parse a webhook body. Raises ValidationError if it is not a JSON object."""
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Payload do webhook não é um JSON válido") from None
    if not isinstance(data, dict):
        raise ValidationError("Payload do webhook deve ser um objeto JSON")
    return ProviderSnapshot.from_response(data)


def event_type(snapshot: ProviderSnapshot) -> str:
    return str(snapshot.raw.get("event") or snapshot.raw.get("type") or "status_change")
