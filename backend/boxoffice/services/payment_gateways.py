# Overview: Payment provider adapters (Chapa hosted checkout, manual offline payments).

"""
Payment gateways

- ChapaGateway talks to the Chapa HTTP API with httpx. Any transport error,
  non-2xx answer or unexpected body becomes PaymentProviderError.
- ManualGateway never leaves the process: it hands back bank transfer /
  mobile money instructions and local refund references.
- Amounts cross the boundary as decimal strings in major units ("450.00");
  everything inside the service stays in integer cents.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

import httpx
from flask import current_app

from ..errors import PaymentProviderError, ValidationError
from ..models.payments import PROVIDER_CHAPA, PROVIDER_MANUAL


METHOD_CHAPA = "chapa"
METHOD_BANK_TRANSFER = "bank_transfer"
METHOD_MOBILE_MONEY = "mobile_money"

MANUAL_METHODS = (METHOD_BANK_TRANSFER, METHOD_MOBILE_MONEY)
VALID_PAYMENT_METHODS = (METHOD_CHAPA,) + MANUAL_METHODS

CHAPA_EVENT_COMPLETED = "charge.completed"
CHAPA_EVENT_FAILED = "charge.failed"


def provider_for_method(payment_method: str) -> str:
    if payment_method == METHOD_CHAPA:
        return PROVIDER_CHAPA
    if payment_method in MANUAL_METHODS:
        return PROVIDER_MANUAL
    raise ValidationError(
        f"payment_method must be one of: {', '.join(VALID_PAYMENT_METHODS)}",
        details={"payment_method": payment_method},
    )


def new_transaction_reference(provider: str) -> str:
    """TX-XXXXXXXX for Chapa, MAN-XXXXXXXX for manual payments."""
    prefix = "TX" if provider == PROVIDER_CHAPA else "MAN"
    return f"{prefix}-{secrets.token_hex(4).upper()}"


def new_refund_reference() -> str:
    return f"REF-{secrets.token_hex(4).upper()}"


def format_amount(amount_cents: int) -> str:
    """4500 -> "45.00" """
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


class ChapaGateway:
    """Chapa hosted checkout."""

    provider = PROVIDER_CHAPA

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.chapa.co",
        *,
        webhook_secret: str = "",
        callback_url: str | None = None,
        return_url: str | None = None,
        timeout: float = 10.0,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.webhook_secret = webhook_secret
        self.callback_url = callback_url
        self.return_url = return_url
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> "ChapaGateway":
        return cls(
            config.get("CHAPA_SECRET_KEY", ""),
            config.get("CHAPA_BASE_URL", "https://api.chapa.co"),
            webhook_secret=config.get("CHAPA_WEBHOOK_SECRET", ""),
            callback_url=config.get("CHAPA_CALLBACK_URL"),
            return_url=config.get("CHAPA_RETURN_URL"),
            timeout=config.get("CHAPA_TIMEOUT_SECONDS", 10.0),
        )

    def _client(self) -> httpx.Client:
        if not self.secret_key:
            raise PaymentProviderError("Chapa is not configured")
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
            },
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            with self._client() as client:
                response = client.request(method, path, **kwargs)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            raise PaymentProviderError(
                "Payment provider rejected the request",
                details={"provider": self.provider, "status_code": exc.response.status_code},
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise PaymentProviderError(
                "Payment provider is unavailable",
                details={"provider": self.provider},
            ) from exc

        if not isinstance(body, dict):
            raise PaymentProviderError(
                "Unexpected payment provider response",
                details={"provider": self.provider},
            )
        return body

    def initialize(
        self,
        *,
        tx_ref: str,
        amount_cents: int,
        currency: str,
        email: str,
        first_name: str,
        last_name: str,
        title: str,
        description: str,
        meta: dict | None = None,
    ) -> str:
        """Start a hosted checkout. Returns the checkout URL."""
        payload = {
            "amount": format_amount(amount_cents),
            "currency": currency,
            "tx_ref": tx_ref,
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            # Chapa limits customization title length
            "title": title[:16],
            "description": description,
            "callback_url": self.callback_url,
            "return_url": f"{self.return_url}?tx_ref={tx_ref}" if self.return_url else None,
            "meta": meta or {},
        }
        body = self._request("POST", "/v1/transaction/initialize", json=payload)

        checkout_url = (body.get("data") or {}).get("checkout_url")
        if body.get("status") != "success" or not checkout_url:
            raise PaymentProviderError(
                body.get("message") or "Failed to initialize payment",
                details={"provider": self.provider, "tx_ref": tx_ref},
            )
        return checkout_url

    def verify(self, tx_ref: str) -> dict:
        """
        Server-to-server status check.

        Returns {"succeeded": bool, "data": provider payload}. A transaction the
        provider reports as still pending raises PaymentProviderError.
        """
        body = self._request("GET", f"/v1/transaction/verify/{tx_ref}")
        data = body.get("data") or {}
        status = str(data.get("status") or "").lower()

        if body.get("status") == "success" and status == "success":
            return {"succeeded": True, "data": data}
        if status in ("failed", "cancelled"):
            return {"succeeded": False, "data": data}
        raise PaymentProviderError(
            "Payment is not settled yet",
            details={"provider": self.provider, "tx_ref": tx_ref, "status": status or None},
        )

    def refund(self, tx_ref: str, amount_cents: int, reason: str | None = None) -> str:
        """Refund a settled transaction. Returns the refund reference."""
        reference = new_refund_reference()
        body = self._request(
            "POST",
            f"/v1/refund/{tx_ref}",
            json={
                "amount": format_amount(amount_cents),
                "reason": reason or "Refund",
                "reference": reference,
            },
        )
        if body.get("status") != "success":
            raise PaymentProviderError(
                body.get("message") or "Refund was not accepted",
                details={"provider": self.provider, "tx_ref": tx_ref},
            )
        return (body.get("data") or {}).get("reference") or reference

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        if not self.webhook_secret or not signature:
            return False
        expected = compute_signature(self.webhook_secret, raw_body)
        return hmac.compare_digest(expected, signature)


class ManualGateway:
    """Bank transfer / mobile money confirmed by an organizer."""

    provider = PROVIDER_MANUAL

    def __init__(self, instructions: dict):
        self.instructions = instructions

    @classmethod
    def from_config(cls, config) -> "ManualGateway":
        return cls(config.get("MANUAL_PAYMENT_INSTRUCTIONS", {}))

    def payment_instructions(
        self, payment_method: str, *, tx_ref: str, order_reference: str, amount_cents: int, currency: str
    ) -> dict:
        if payment_method not in MANUAL_METHODS:
            raise ValidationError(f"{payment_method} is not a manual payment method")
        return {
            **self.instructions.get(payment_method, {}),
            "payment_method": payment_method,
            "transaction_reference": tx_ref,
            "order_reference": order_reference,
            "amount": format_amount(amount_cents),
            "currency": currency,
        }

    def refund(self, tx_ref: str, amount_cents: int, reason: str | None = None) -> str:
        # Money goes back offline; only the reference is recorded.
        return new_refund_reference()


def gateway_for(provider: str):
    config = current_app.config
    if provider == PROVIDER_CHAPA:
        return ChapaGateway.from_config(config)
    if provider == PROVIDER_MANUAL:
        return ManualGateway.from_config(config)
    raise ValidationError(f"Unknown payment provider: {provider}")
