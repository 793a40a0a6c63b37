"""Authorize.Net adapter speaking the JSON ``createTransactionRequest`` API."""

from __future__ import annotations

import json
from typing import Any

import httpx
from loguru import logger

from talentvote.core.config import Settings, settings as default_settings
from talentvote.domain import ChargeRequest, ChargeResult, PaymentError

from .base import clean_gateway_message

RESULT_OK = "Ok"
RESULT_ERROR = "Error"


class AuthorizeNetGateway:
    """Thin wrapper around the Authorize.Net transaction endpoint."""

    name = "authorize_net"

    def __init__(
        self,
        *,
        config: Settings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._settings = config or default_settings
        self.endpoint = self._settings.gateway_endpoint
        self._client = client or httpx.Client(timeout=self._settings.payment_gateway_timeout_seconds)

    def public_config(self) -> dict[str, str | None]:
        return {
            "apiLoginId": self._settings.authorize_net_api_login_id,
            "clientKey": self._settings.authorize_net_public_client_key,
            "environment": self._settings.authorize_net_environment,
        }

    def _merchant_authentication(self) -> dict[str, str]:
        login_id = self._settings.authorize_net_api_login_id
        transaction_key = self._settings.authorize_net_transaction_key
        if not login_id or not transaction_key:
            raise PaymentError("Payments are not configured")
        return {"name": login_id, "transactionKey": transaction_key}

    def build_payload(self, request: ChargeRequest) -> dict[str, Any]:
        # The gateway validates element order against its schema, so keys are
        # inserted in schema order.
        transaction: dict[str, Any] = {
            "transactionType": "authCaptureTransaction",
            "amount": f"{request.amount:.2f}",
            "currencyCode": request.currency,
            "payment": {
                "opaqueData": {
                    "dataDescriptor": request.payment.data_descriptor,
                    "dataValue": request.payment.data_value,
                }
            },
            "order": {"description": request.description[:255]},
        }
        if request.customer_email:
            transaction["customer"] = {"email": request.customer_email}
        if request.customer_name:
            parts = request.customer_name.split()
            first_name = parts[0] if parts else ""
            last_name = " ".join(parts[1:]) or first_name
            transaction["billTo"] = {"firstName": first_name, "lastName": last_name}
        return {
            "createTransactionRequest": {
                "merchantAuthentication": self._merchant_authentication(),
                "transactionRequest": transaction,
            }
        }

    def charge(self, request: ChargeRequest) -> ChargeResult:
        payload = self.build_payload(request)
        logger.info(
            "Submitting {} {} charge to {} ({})",
            request.amount,
            request.currency,
            self.name,
            request.description,
        )
        try:
            response = self._client.post(self.endpoint, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Payment gateway request failed: {}", exc)
            raise PaymentError("Payment gateway unavailable. Please try again.") from exc

        # The gateway prefixes its JSON with a UTF-8 byte order mark.
        try:
            body = json.loads(response.content.decode("utf-8-sig"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PaymentError("No response from payment gateway") from exc
        return self.parse_response(body)

    @staticmethod
    def parse_response(body: dict[str, Any]) -> ChargeResult:
        messages = body.get("messages") or {}
        result_code = messages.get("resultCode")
        txn = body.get("transactionResponse") or {}
        txn_errors = (txn.get("errors") or []) if isinstance(txn, dict) else []

        if result_code == RESULT_OK and txn.get("messages") and txn.get("transId"):
            return ChargeResult(
                transaction_id=str(txn["transId"]),
                auth_code=txn.get("authCode"),
                account_number=txn.get("accountNumber") or None,
                account_type=txn.get("accountType") or None,
            )

        if txn_errors:
            error = txn_errors[0]
            code = error.get("errorCode")
            text = error.get("errorText")
        else:
            entries = messages.get("message") or [{}]
            code = entries[0].get("code")
            text = entries[0].get("text")

        logger.warning("Payment declined by gateway (code={})", code)
        raise PaymentError(
            f"Payment failed: {clean_gateway_message(text)}",
            gateway_code=str(code) if code is not None else None,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "AuthorizeNetGateway":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["AuthorizeNetGateway", "RESULT_ERROR", "RESULT_OK"]
