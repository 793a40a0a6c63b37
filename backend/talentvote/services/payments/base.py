"""Gateway contracts for payment integrations."""

from __future__ import annotations

import re
from typing import Protocol

from talentvote.domain import ChargeRequest, ChargeResult

_ERROR_PREFIX = re.compile(r"^\s*\(?[A-Z]{0,2}\d+\)?\s*[:.\-]?\s+")


class PaymentGateway(Protocol):
    """Interface implemented by payment gateway adapters."""

    name: str

    def charge(self, request: ChargeRequest) -> ChargeResult:
        """Capture the amount against the opaque token or raise :class:`PaymentError`."""

    def public_config(self) -> dict[str, str | None]:
        """Return values the browser needs to tokenize a card."""


def clean_gateway_message(message: str | None) -> str:
    """Strip a leading numeric error code (``E00027 ...``, ``2: ...``) for display."""

    if not message:
        return "Payment could not be processed"
    cleaned = _ERROR_PREFIX.sub("", message, count=1).strip()
    return cleaned or message.strip()


__all__ = ["PaymentGateway", "clean_gateway_message"]
