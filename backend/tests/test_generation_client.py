"""
Tests for the HTTP generation client, using httpx.MockTransport.
"""

import asyncio
import json

import httpx
import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from mediaflow.services.cancellation import CancelToken
from mediaflow.services.errors import AbortError, HttpError, NetworkError
from mediaflow.services.generation_client import (
    GenerationRequest,
    HttpGenerationClient,
    ProviderConfig,
    ProviderSettings,
    SelectedModel,
    build_generate_headers,
)

GENERATE_URL = "http://editor.test/api/generate"
LLM_URL = "http://editor.test/api/llm"


def make_client(handler, settings=None):
    return HttpGenerationClient(
        settings or ProviderSettings(),
        generate_url=GENERATE_URL,
        llm_url=LLM_URL,
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


class TestHeaders:
    def test_provider_key_forwarded(self):
        settings = ProviderSettings(providers={"fal": ProviderConfig(api_key="fal-key")})
        headers = build_generate_headers("fal", settings)
        assert headers == {"Content-Type": "application/json", "X-Fal-API-Key": "fal-key"}

    def test_google_uses_gemini_key(self):
        settings = ProviderSettings(providers={"gemini": ProviderConfig(api_key="g-key")})
        assert build_generate_headers("google", settings)["X-Gemini-API-Key"] == "g-key"

    def test_missing_key_or_provider(self):
        assert build_generate_headers("kie", ProviderSettings()) == {"Content-Type": "application/json"}
        assert build_generate_headers(None, ProviderSettings()) == {"Content-Type": "application/json"}


class TestHttpGenerationClient:
    @pytest.mark.asyncio
    async def test_posts_camel_case_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "image": "data:image/png;base64,OUT"})

        settings = ProviderSettings(providers={"replicate": ProviderConfig(api_key="r-key")})
        client = make_client(handler, settings)
        request = GenerationRequest(
            node_id="g1",
            media_type="image",
            provider="replicate",
            prompt="a fox",
            selected_model=SelectedModel(provider="replicate", model_id="flux"),
            options={"aspectRatio": "1:1"},
        )

        result = await client.generate(request)
        await client.aclose()

        assert result.success is True
        assert result.image == "data:image/png;base64,OUT"
        assert seen["url"] == GENERATE_URL
        assert seen["headers"]["x-replicate-api-key"] == "r-key"
        body = seen["body"]
        assert body["nodeId"] == "g1"
        assert body["mediaType"] == "image"
        assert body["selectedModel"] == {"provider": "replicate", "modelId": "flux", "capabilities": []}
        assert body["options"] == {"aspectRatio": "1:1"}
        assert "model" not in body

    @pytest.mark.asyncio
    async def test_text_goes_to_llm_route(self):
        urls = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(200, json={"success": True, "text": "hello"})

        client = make_client(handler)
        result = await client.generate(GenerationRequest(node_id="l", media_type="text", prompt="hi"))
        await client.aclose()

        assert urls == [LLM_URL]
        assert result.text == "hello"

    @pytest.mark.asyncio
    async def test_parses_camel_case_result(self):
        def handler(request):
            return httpx.Response(200, json={"success": True, "videoUrl": "https://x/v.mp4"})

        client = make_client(handler)
        result = await client.generate(GenerationRequest(node_id="v", media_type="video"))
        await client.aclose()
        assert result.output_video == "https://x/v.mp4"

    @pytest.mark.asyncio
    async def test_http_error_uses_json_error_field(self):
        def handler(request):
            return httpx.Response(429, json={"error": "Rate limit exceeded"})

        client = make_client(handler)
        with pytest.raises(HttpError) as exc_info:
            await client.generate(GenerationRequest(node_id="g", media_type="image"))
        await client.aclose()

        assert exc_info.value.status_code == 429
        assert exc_info.value.message == "Rate limit exceeded"
        assert exc_info.value.node_id == "g"

    @pytest.mark.asyncio
    async def test_http_error_with_text_body(self):
        def handler(request):
            return httpx.Response(502, text="Bad gateway")

        client = make_client(handler)
        with pytest.raises(HttpError) as exc_info:
            await client.generate(GenerationRequest(node_id="g", media_type="image"))
        await client.aclose()
        assert exc_info.value.message == "HTTP 502 - Bad gateway"

    @pytest.mark.asyncio
    async def test_invalid_json_response(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        client = make_client(handler)
        with pytest.raises(HttpError, match="Invalid response"):
            await client.generate(GenerationRequest(node_id="g", media_type="image"))
        await client.aclose()

    @pytest.mark.asyncio
    async def test_timeout_becomes_network_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)
        with pytest.raises(NetworkError, match="Request timed out"):
            await client.generate(GenerationRequest(node_id="g", media_type="image"))
        await client.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_becomes_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(NetworkError, match="Network error"):
            await client.generate(GenerationRequest(node_id="g", media_type="image"))
        await client.aclose()

    @pytest.mark.asyncio
    async def test_cancel_token_abandons_request(self):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={"success": True})

        client = make_client(handler)
        token = CancelToken()
        task = asyncio.create_task(
            client.generate(GenerationRequest(node_id="g", media_type="image"), token)
        )
        await asyncio.sleep(0.01)
        token.cancel()

        with pytest.raises(AbortError):
            await asyncio.wait_for(task, timeout=1)
        await client.aclose()
