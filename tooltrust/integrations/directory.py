"""Identity and rental directory contract."""

from datetime import datetime
from decimal import Decimal
from typing import Protocol

import httpx
from pydantic import BaseModel, Field

from tooltrust.shared.errors import ExternalServiceError

SERVICE_NAME = "directory"


class UserProfile(BaseModel):
    user_id: str
    display_name: str
    email: str | None = None
    is_admin: bool = False
    created_at: datetime | None = None


class RentalInfo(BaseModel):
    rental_id: str
    owner_id: str
    renter_id: str
    payment_ids: list[str] = Field(default_factory=list)

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.owner_id, self.renter_id)

    def counterparty(self, user_id: str) -> str | None:
        if user_id == self.owner_id:
            return self.renter_id
        if user_id == self.renter_id:
            return self.owner_id
        return None


class PaymentInfo(BaseModel):
    payment_id: str
    rental_id: str
    payer_id: str
    amount: Decimal
    currency: str = "USD"


class UserDirectory(Protocol):
    async def get_user(self, user_id: str) -> UserProfile | None: ...

    async def get_rental(self, rental_id: str) -> RentalInfo | None: ...

    async def get_payment(self, payment_id: str) -> PaymentInfo | None: ...

    async def is_admin(self, user_id: str) -> bool: ...


class HttpUserDirectory:
    """Looks users, rentals and payments up in the marketplace core service."""

    def __init__(
        self, base_url: str, timeout: float = 3.0, client: httpx.AsyncClient | None = None
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def get_user(self, user_id: str) -> UserProfile | None:
        data = await self._get(f"/v1/users/{user_id}", "get_user")
        return UserProfile.model_validate(data) if data is not None else None

    async def get_rental(self, rental_id: str) -> RentalInfo | None:
        data = await self._get(f"/v1/rentals/{rental_id}", "get_rental")
        return RentalInfo.model_validate(data) if data is not None else None

    async def get_payment(self, payment_id: str) -> PaymentInfo | None:
        data = await self._get(f"/v1/payments/{payment_id}", "get_payment")
        return PaymentInfo.model_validate(data) if data is not None else None

    async def is_admin(self, user_id: str) -> bool:
        user = await self.get_user(user_id)
        return user is not None and user.is_admin

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, operation: str) -> dict | None:
        try:
            response = await self._client.get(path)
        except httpx.HTTPError as exc:
            raise ExternalServiceError(
                f"Directory {operation} failed: {exc}", service=SERVICE_NAME, operation=operation
            ) from exc
        if response.status_code == 404:
            return None
        if response.is_error:
            raise ExternalServiceError(
                f"Directory {operation} returned {response.status_code}",
                service=SERVICE_NAME,
                operation=operation,
                status_code=response.status_code,
            )
        return response.json()
