"""Payment processor contract: refunds, dispute escalation and dispute lookup."""

from datetime import datetime
from decimal import Decimal
from typing import Protocol

import httpx
import structlog
from pydantic import BaseModel

from tooltrust.shared.errors import ExternalServiceError

logger = structlog.get_logger()

SERVICE_NAME = "payment_processor"


class EscalationRequest(BaseModel):
    dispute_id: str
    payment_id: str | None = None
    amount: Decimal
    currency: str = "USD"
    reason: str
    description: str = ""


class ExternalDisputeState(BaseModel):
    """The processor's view of an escalated dispute."""

    external_dispute_id: str
    status: str
    reason: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    updated_at: datetime | None = None


class PaymentProcessor(Protocol):
    async def refund(
        self, payment_id: str, amount: Decimal, reason: str, idempotency_key: str
    ) -> str:
        """Refund ``amount`` of ``payment_id``; returns the refund transaction id.

        Repeating a call with the same ``idempotency_key`` must not refund twice.
        """
        ...

    async def escalate_dispute(self, request: EscalationRequest) -> str:
        """Open a case with the processor; returns its external dispute id."""
        ...

    async def get_dispute(self, external_dispute_id: str) -> ExternalDisputeState: ...


class HttpPaymentProcessor:
    """Payment processor gateway client over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def refund(
        self, payment_id: str, amount: Decimal, reason: str, idempotency_key: str
    ) -> str:
        response = await self._client.post(
            "/v1/refunds",
            json={"payment_id": payment_id, "amount": str(amount), "reason": reason},
            headers={"Idempotency-Key": idempotency_key},
        )
        data = self._json(response, "refund")
        logger.info("refund_issued", payment_id=payment_id, amount=str(amount))
        return data["transaction_id"]

    async def escalate_dispute(self, request: EscalationRequest) -> str:
        response = await self._client.post(
            "/v1/disputes", json=request.model_dump(mode="json")
        )
        data = self._json(response, "escalate_dispute")
        return data["external_dispute_id"]

    async def get_dispute(self, external_dispute_id: str) -> ExternalDisputeState:
        response = await self._client.get(f"/v1/disputes/{external_dispute_id}")
        return ExternalDisputeState.model_validate(self._json(response, "get_dispute"))

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> dict:
        if response.is_error:
            raise ExternalServiceError(
                f"Payment processor {operation} returned {response.status_code}",
                service=SERVICE_NAME,
                operation=operation,
                status_code=response.status_code,
            )
        return response.json()
