"""Evidence storage contract. Only metadata is kept locally."""

from typing import Protocol

import httpx
from pydantic import BaseModel, Field

from tooltrust.shared.errors import ExternalServiceError

SERVICE_NAME = "evidence_storage"


class EvidenceUpload(BaseModel):
    file_name: str = Field(min_length=1)
    content_type: str
    content: bytes
    description: str = ""


class EvidenceStorage(Protocol):
    async def store(self, file_name: str, content_type: str, content: bytes, folder: str) -> str:
        """Persist the bytes and return an opaque storage reference."""
        ...


class HttpEvidenceStorage:
    """Uploads evidence files to the object storage gateway.

    Malware scanning happens asynchronously on the gateway side, which later
    calls back with a verdict for the returned reference.
    """

    def __init__(
        self, base_url: str, timeout: float = 30.0, client: httpx.AsyncClient | None = None
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def store(self, file_name: str, content_type: str, content: bytes, folder: str) -> str:
        response = await self._client.post(
            "/v1/objects",
            data={"folder": folder},
            files={"file": (file_name, content, content_type)},
        )
        if response.is_error:
            raise ExternalServiceError(
                f"Evidence upload returned {response.status_code}",
                service=SERVICE_NAME,
                operation="store",
                status_code=response.status_code,
            )
        return response.json()["reference"]

    async def aclose(self) -> None:
        await self._client.aclose()
