"""Tests for EvolinkProvider using httpx.MockTransport."""

import json

import httpx
import pytest

from genorch.config import ProviderConfig
from genorch.errors import TransientNetworkError
from genorch.schemas.generation import GenerationRequest
from genorch.services.provider import EvolinkProvider, get_provider


@pytest.fixture
def config():
    return ProviderConfig(base_url="https://provider.test/", api_key="secret-key")


def provider_with(config, handler):
    return EvolinkProvider(config, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_image_request_is_posted_with_bearer_auth(config):
    seen = {}

    def handler(request: httpx.Request):
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"url": "https://cdn.test/a.png"})

    provider = provider_with(config, handler)
    request = GenerationRequest(prompt="a red fox", config_id="cfg-1")

    response = await provider.send(request)
    await provider.close()

    assert response.ok
    assert response.body == {"url": "https://cdn.test/a.png"}
    assert seen["method"] == "POST"
    assert seen["url"] == "https://provider.test/v1/images/generations"
    assert seen["auth"] == "Bearer secret-key"
    assert seen["body"]["prompt"] == "a red fox"
    assert seen["body"]["model"] == config.image_model


@pytest.mark.asyncio
async def test_video_request_uses_video_endpoint(config):
    paths = []

    def handler(request):
        paths.append(request.url.path)
        return httpx.Response(200, json={"id": "task-1", "status": "pending"})

    provider = provider_with(config, handler)
    request = GenerationRequest(prompt="waves", config_id="cfg-1", type="video")

    await provider.send(request)

    assert paths == ["/v1/videos/generations"]
    assert provider.endpoint_key(request) == "POST:https://provider.test/v1/videos/generations"


@pytest.mark.asyncio
async def test_error_status_is_returned_not_raised(config):
    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "7"}, json={"error": "slow down"})

    provider = provider_with(config, handler)

    response = await provider.send(GenerationRequest(prompt="x", config_id="c"))

    assert response.status_code == 429
    assert response.header("retry-after") == "7"
    assert response.header("RETRY-AFTER") == "7"


@pytest.mark.asyncio
async def test_non_json_body_is_kept_as_text(config):
    def handler(request):
        return httpx.Response(502, text="<html>Bad Gateway</html>")

    provider = provider_with(config, handler)

    response = await provider.send(GenerationRequest(prompt="x", config_id="c"))

    assert response.body == "<html>Bad Gateway</html>"


@pytest.mark.asyncio
async def test_transport_failures_become_transient_errors(config):
    def handler(request):
        raise httpx.ConnectTimeout("connect timed out", request=request)

    provider = provider_with(config, handler)

    with pytest.raises(TransientNetworkError):
        await provider.send(GenerationRequest(prompt="x", config_id="c"))


@pytest.mark.asyncio
async def test_get_task_formats_path(config):
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == "/v1/tasks/task-42"
        return httpx.Response(200, json={"id": "task-42", "status": "completed"})

    provider = provider_with(config, handler)

    response = await provider.get_task("task-42")

    assert response.body["status"] == "completed"


@pytest.mark.asyncio
async def test_client_is_recreated_after_close(config):
    provider = provider_with(config, lambda request: httpx.Response(200, json={}))
    first = provider.client

    await provider.close()

    assert provider.client is not first


def test_get_provider_uses_given_config(config):
    provider = get_provider(config)

    assert isinstance(provider, EvolinkProvider)
    assert provider.base_url == "https://provider.test"
