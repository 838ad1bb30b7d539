import logging

import httpx
from pydantic import ValidationError

from .errors import AuthorizationError, ConnectivityError, ProtocolError
from .schemas import SyncRequest, SyncResponse

logger = logging.getLogger(__name__)


def _error_detail(response: httpx.Response) -> str:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("detail"):
            return str(body["detail"])
    return response.text or "Sync failed"


class RemoteAuthority:
    """
    HTTP client for the TimeCheck API.

    The authority accepts a batch of changes on ``POST /sync`` and answers
    with every record version the client does not have yet plus a new
    cursor. ``GET /health`` is a liveness probe.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def check_health(self) -> None:
        try:
            response = await self.client.get(f"{self.base_url}/health")
        except httpx.HTTPError as exc:
            raise ConnectivityError(f"API unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise ConnectivityError(f"API unavailable ({response.status_code})")

    async def push_pull(self, request: SyncRequest, token: str | None) -> SyncResponse:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self.client.post(
                f"{self.base_url}/sync",
                headers=headers,
                json=request.to_wire(),
            )
        except httpx.TimeoutException as exc:
            raise ConnectivityError("Sync request timed out") from exc
        except httpx.HTTPError as exc:
            raise ConnectivityError(f"Sync request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise AuthorizationError(_error_detail(response))
        if response.status_code >= 400:
            raise ProtocolError(_error_detail(response), status_code=response.status_code)

        try:
            return SyncResponse.model_validate_json(response.content)
        except ValidationError as exc:
            logger.warning("Rejected malformed sync response: %s", exc)
            raise ProtocolError(f"malformed sync response: {exc}", status_code=response.status_code) from exc
