"""Async client for an Evolink-style generation API.

Image and video jobs are POSTed to the generations endpoints; video (and
some image) jobs answer with a task id that is polled through the tasks
endpoint. The client returns raw responses so the caller can grade
rate-limit headers before deciding what to raise.
"""

import logging
from typing import Any, Optional

import httpx

from genorch.config import ProviderConfig
from genorch.errors import TransientNetworkError
from genorch.schemas.generation import GenerationRequest, ProviderResponse
from genorch.services.provider.base import GenerationProvider

logger = logging.getLogger(__name__)


class EvolinkProvider(GenerationProvider):
    """httpx-backed provider with bearer-token auth.

    The AsyncClient is created lazily and recreated if it was closed.
    Timeouts and transport-level retries come from ProviderConfig.
    """

    def __init__(self, config: ProviderConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                follow_redirects=True,
                timeout=httpx.Timeout(self.config.timeout, connect=self.config.connect_timeout),
                transport=self._transport
                or httpx.AsyncHTTPTransport(retries=self.config.retries),
            )
        return self._client

    def _path_for(self, request: GenerationRequest) -> str:
        return self.config.video_path if request.type == "video" else self.config.image_path

    def endpoint_key(self, request: GenerationRequest) -> str:
        return f"POST:{self.base_url}{self._path_for(request)}"

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        """Request body for the generations endpoint."""
        if request.type == "video":
            return {"model": self.config.video_model, "prompt": request.prompt}
        return {
            "model": self.config.image_model,
            "prompt": request.prompt,
            "size": "auto",
            "image_urls": [],
        }

    async def send(self, request: GenerationRequest) -> ProviderResponse:
        path = self._path_for(request)
        payload = self.build_payload(request)
        logger.info(
            "POST %s%s request=%s model=%s prompt_length=%d",
            self.base_url, path, request.id, payload["model"], len(request.prompt),
        )
        response = await self._request("POST", path, json=payload)
        logger.info("  generation response: HTTP %d", response.status_code)
        return response

    async def get_task(self, task_id: str) -> ProviderResponse:
        path = self.config.task_path.format(task_id=task_id)
        response = await self._request("GET", path)
        logger.debug("GET %s%s: HTTP %d", self.base_url, path, response.status_code)
        return response

    async def _request(self, method: str, path: str, **kwargs) -> ProviderResponse:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Request timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Network error on {method} {path}: {e}") from e
        return _to_provider_response(response)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def _to_provider_response(response: httpx.Response) -> ProviderResponse:
    try:
        body = response.json()
    except ValueError:
        body = response.text
    return ProviderResponse(
        status_code=response.status_code,
        headers=dict(response.headers),
        body=body,
    )
