"""Pagar.me Core v5 client for contract charges and creator payouts.

Uses HTTP Basic Auth with the secret key as username and an empty
password. Every call goes through ``httpx.AsyncClient`` with an explicit
timeout; transport errors, timeouts and non-2xx responses surface as
``PaymentGatewayError``.

Endpoints used:
- POST /customers                           : create customer
- POST /customers/{customer_id}/cards       : store a card
- POST /orders                              : credit card auth_and_capture
- POST /recipients/{recipient_id}/withdrawals: payout to a recipient
"""

import base64
import logging
import time
import uuid
from decimal import ROUND_HALF_UP, Decimal

import httpx
from pydantic import BaseModel, Field

from nexa_platform.app.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Order statuses that mean the money was captured
ORDER_PAID_STATUSES = {"paid"}

# Transfer statuses that mean the payout was accepted by the gateway
WITHDRAWAL_OK_STATUSES = {"pending", "processing", "transferred"}


class PaymentGatewayError(Exception):
    """Raised when the gateway rejects a call or cannot be reached."""

    def __init__(self, message: str, status_code: int | None = None, response: dict | None = None):
        self.status_code = status_code
        self.response = response or {}
        super().__init__(message)


class GatewayResult(BaseModel):
    """Normalized outcome of a charge or payout."""

    success: bool
    transaction_id: str | None = None
    status: str = ""
    message: str = ""
    simulation: bool = False
    raw: dict = Field(default_factory=dict)


def to_cents(amount) -> int:
    """Convert a BRL amount to integer cents."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PagarMeClient:
    """Async client for the Pagar.me Core v5 REST API."""

    def __init__(self, secret_key: str, base_url: str = "https://api.pagar.me/core/v5", timeout: float = 30.0):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "PagarMeClient":
        return cls(
            secret_key=settings.pagarme_secret_key,
            base_url=settings.pagarme_base_url,
            timeout=settings.gateway_timeout_seconds,
        )

    def _basic_auth(self) -> str:
        """Build Basic Auth base64 string (secret key, empty password)."""
        return base64.b64encode(f"{self.secret_key}:".encode()).decode()

    async def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        if not self.secret_key:
            raise PaymentGatewayError("Pagar.me secret key not configured")

        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Basic {self._basic_auth()}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method, url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            logger.error("Pagar.me %s %s timed out after %.1fs", method, path, self.timeout)
            raise PaymentGatewayError(f"Gateway timed out after {self.timeout}s") from exc
        except httpx.RequestError as exc:
            logger.error("Pagar.me %s %s transport error: %s", method, path, exc)
            raise PaymentGatewayError(f"Gateway request failed: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text[:500]}
        if not isinstance(data, dict):
            data = {"data": data}

        if not 200 <= resp.status_code < 300:
            message = data.get("message") or f"HTTP {resp.status_code}"
            logger.error("Pagar.me %s %s failed (%d): %s", method, path, resp.status_code, message)
            raise PaymentGatewayError(message, status_code=resp.status_code, response=data)

        return data

    # -----------------------------------------------------------------------
    # Customers and cards
    # -----------------------------------------------------------------------

    async def create_customer(self, name: str, email: str, document: str, phone: str | None = None) -> dict:
        payload = {
            "name": name,
            "email": email,
            "document": document,
            "type": "individual" if len(document) <= 11 else "company",
        }
        if phone:
            payload["phones"] = {"mobile_phone": {"country_code": "55", "number": phone}}
        return await self._request("POST", "/customers", payload)

    async def create_card(self, customer_id: str, card: dict) -> dict:
        """Store a card for *customer_id*; *card* follows the Pagar.me card schema."""
        return await self._request("POST", f"/customers/{customer_id}/cards", card)

    # -----------------------------------------------------------------------
    # Charges and payouts
    # -----------------------------------------------------------------------

    async def create_order(
        self,
        *,
        contract_id: str,
        amount,
        customer_id: str,
        card_id: str,
        description: str,
        installments: int = 1,
        statement_descriptor: str = "NEXA CONTRACT",
    ) -> GatewayResult:
        """Charge a stored card for a contract (auth_and_capture)."""
        cents = to_cents(amount)
        payload = {
            "code": f"CONTRACT_{contract_id}_{int(time.time())}",
            "customer_id": customer_id,
            "items": [
                {
                    "amount": cents,
                    "description": description,
                    "quantity": 1,
                    "code": f"contract_{contract_id}",
                }
            ],
            "payments": [
                {
                    "payment_method": "credit_card",
                    "credit_card": {
                        "card_id": card_id,
                        "operation_type": "auth_and_capture",
                        "installments": installments,
                        "statement_descriptor": statement_descriptor,
                    },
                    "amount": cents,
                }
            ],
        }
        data = await self._request("POST", "/orders", payload)
        status = data.get("status", "")
        success = status in ORDER_PAID_STATUSES
        logger.info("Pagar.me order %s for contract %s: status=%s", data.get("id"), contract_id, status)
        return GatewayResult(
            success=success,
            transaction_id=data.get("id"),
            status=status,
            message="" if success else f"Payment not captured (status={status or 'unknown'})",
            raw=data,
        )

    async def create_withdrawal(
        self,
        *,
        recipient_id: str | None,
        amount,
        withdrawal_id: str,
        method: str,
    ) -> GatewayResult:
        """Request a payout from the platform balance to *recipient_id*."""
        if not recipient_id:
            raise PaymentGatewayError("No Pagar.me recipient configured for this payout")
        payload = {
            "amount": to_cents(amount),
            "metadata": {"withdrawal_id": str(withdrawal_id), "method": method},
        }
        data = await self._request("POST", f"/recipients/{recipient_id}/withdrawals", payload)
        status = data.get("status", "")
        success = status in WITHDRAWAL_OK_STATUSES
        logger.info("Pagar.me withdrawal %s for %s: status=%s", data.get("id"), withdrawal_id, status)
        return GatewayResult(
            success=success,
            transaction_id=data.get("id"),
            status=status,
            message="" if success else f"Withdrawal rejected (status={status or 'unknown'})",
            raw=data,
        )


class SimulatedGateway:
    """Drop-in gateway that approves everything unless told to decline."""

    def __init__(self, decline: bool = False, decline_reason: str = "Simulated decline"):
        self.decline = decline
        self.decline_reason = decline_reason

    def _result(self, transaction_id: str, status: str) -> GatewayResult:
        if self.decline:
            return GatewayResult(
                success=False, status="failed", message=self.decline_reason, simulation=True
            )
        return GatewayResult(success=True, transaction_id=transaction_id, status=status, simulation=True)

    async def create_customer(self, name: str, email: str, document: str, phone: str | None = None) -> dict:
        return {"id": f"SIM_CUS_{uuid.uuid4().hex[:12]}", "name": name, "email": email, "simulation": True}

    async def create_card(self, customer_id: str, card: dict) -> dict:
        number = str(card.get("number", ""))
        return {
            "id": f"SIM_CARD_{int(time.time())}_{uuid.uuid4().hex[:6]}",
            "customer_id": customer_id,
            "last_four_digits": number[-4:],
            "simulation": True,
        }

    async def create_order(self, *, contract_id: str, amount, **kwargs) -> GatewayResult:
        logger.info("SIMULATION: charging contract %s amount=%s", contract_id, amount)
        return self._result(f"SIM_CONTRACT_{int(time.time())}_{contract_id}", "paid")

    async def create_withdrawal(
        self, *, recipient_id: str | None, amount, withdrawal_id: str, method: str
    ) -> GatewayResult:
        logger.info("SIMULATION: withdrawal %s via %s amount=%s", withdrawal_id, method, amount)
        return self._result(
            f"SIM_WD_{method.upper()}_{int(time.time())}_{withdrawal_id}", "transferred"
        )


def get_payment_gateway(settings: Settings | None = None):
    """Return the gateway selected by configuration."""
    settings = settings or get_settings()
    if settings.pagarme_simulation_mode:
        return SimulatedGateway()
    return PagarMeClient.from_settings(settings)
