"""Content-addressed store client (Pinata pinning API + IPFS gateway)."""

import json
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class StoreClient:
    """Pins blobs and JSON documents and reads them back through a gateway.

    Raises ``httpx`` errors as-is; classification and retry happen in the
    caller.
    """

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        *,
        api_url: str = "https://api.pinata.cloud",
        gateway_url: str = "https://gateway.pinata.cloud",
        timeout: float = 60.0,
    ):
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url.rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={
                "pinata_api_key": api_key,
                "pinata_secret_api_key": secret_key,
            },
        )
        self._gateway = httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def pin_file(self, blob: bytes, name: str, content_type: str = "application/pdf") -> str:
        """Upload ``blob`` and return its content identifier."""
        response = await self._client.post(
            f"{self.api_url}/pinning/pinFileToIPFS",
            files={"file": (name, blob, content_type)},
            data={"pinataMetadata": json.dumps({"name": name})},
        )
        response.raise_for_status()
        cid = response.json()["IpfsHash"]
        logger.info("Pinned %s (%d bytes) as %s", name, len(blob), cid)
        return cid

    async def pin_json(self, payload: Any, name: Optional[str] = None) -> str:
        body: dict[str, Any] = {"pinataContent": payload}
        if name:
            body["pinataMetadata"] = {"name": name}
        response = await self._client.post(f"{self.api_url}/pinning/pinJSONToIPFS", json=body)
        response.raise_for_status()
        cid = response.json()["IpfsHash"]
        logger.info("Pinned JSON document %s as %s", name or "<unnamed>", cid)
        return cid

    async def fetch(self, storage_id: str) -> bytes:
        response = await self._gateway.get(f"{self.gateway_url}/ipfs/{storage_id}")
        response.raise_for_status()
        return response.content

    async def close(self) -> None:
        await self._client.aclose()
        await self._gateway.aclose()
