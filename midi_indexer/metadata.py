"""Off-chain MIDI metadata: schema and gateway fetcher."""

from typing import Any, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)

IPFS_SCHEME = "ipfs://"
DEFAULT_GATEWAY = "https://nftstorage.link/ipfs/"


class DeviceRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    manufacturer: Optional[str] = None


class MidiEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    midi: Optional[str] = None
    image: Optional[str] = None
    tags: Optional[List[str]] = None


class MidiProperties(BaseModel):
    model_config = ConfigDict(extra="allow")

    devices: Optional[List[DeviceRef]] = None
    tags: Optional[List[str]] = None
    entries: Optional[List[MidiEntry]] = None


class MidiMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    description: Optional[str] = None
    image: Optional[str] = None
    properties: MidiProperties = Field(default_factory=MidiProperties)


def gateway_url(uri: str, token_id: int, gateway: str = DEFAULT_GATEWAY) -> str:
    """Rewrite an ipfs:// uri to the http gateway and fill the ERC-1155 {id} slot."""
    if uri.startswith(IPFS_SCHEME):
        uri = gateway.rstrip("/") + "/" + uri[len(IPFS_SCHEME):]
    if "{id}" in uri:
        uri = uri.replace("{id}", format(token_id, "064x"))
    return uri


class MetadataFetcher:
    def __init__(
        self,
        chain: Any,
        gateway: str = DEFAULT_GATEWAY,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.chain = chain
        self.gateway = gateway
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def fetch(self, token_id: int) -> Optional[MidiMetadata]:
        """Return the parsed metadata for ``token_id`` or None.

        None covers every failure: unreadable uri, transport error, non-2xx
        status, a body that is not JSON, and JSON that does not match
        ``MidiMetadata``.
        """
        try:
            uri = await self.chain.uri(token_id)
        except Exception as exc:
            logger.error("error resolving uri", token_id=token_id, error=str(exc))
            return None
        if not uri:
            logger.error("empty uri", token_id=token_id)
            return None

        url = gateway_url(uri, token_id, self.gateway)
        try:
            res = await self.client.get(url)
        except httpx.HTTPError as exc:
            logger.error("error fetching", url=url, token_id=token_id, error=str(exc))
            return None

        if not res.is_success:
            logger.error("error fetching", url=url, token_id=token_id, status=res.status_code)
            return None

        try:
            return MidiMetadata.model_validate(res.json())
        except ValueError as exc:
            # covers json decode errors and pydantic ValidationError
            logger.error("invalid metadata", url=url, token_id=token_id, error=str(exc))
            return None

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
