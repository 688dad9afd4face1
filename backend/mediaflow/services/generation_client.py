"""
Generation client: the one cancellable network call behind every generator.

The engine does not talk to providers directly. It posts a GenerationRequest to
the editor's generation route (or the LLM route for text) and gets back a
GenerationResult. Transport and protocol failures are classified here so node
handlers only ever see NetworkError / HttpError.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mediaflow.config import EngineConfig
from mediaflow.services.cancellation import CancelToken
from mediaflow.services.errors import HttpError, NetworkError

logger = logging.getLogger(__name__)


MediaType = Literal[
    "image", "video", "3d", "audio", "text",
    "video_stitch", "video_trim", "frame_grab", "ease_curve", "split_grid",
]

# Header each provider's API key travels in.
PROVIDER_KEY_HEADERS: dict[str, str] = {
    "gemini": "X-Gemini-API-Key",
    "google": "X-Gemini-API-Key",
    "replicate": "X-Replicate-API-Key",
    "fal": "X-Fal-API-Key",
    "kie": "X-Kie-Key",
    "wavespeed": "X-WaveSpeed-Key",
    "openai": "X-OpenAI-API-Key",
}


class SelectedModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )

    provider: str
    model_id: str
    display_name: str | None = None
    capabilities: list[str] = Field(default_factory=list)


class ProviderConfig(BaseModel):
    api_key: str | None = None


class ProviderSettings(BaseModel):
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)

    def api_key_for(self, provider: str) -> str | None:
        # LLM nodes call Gemini "google"
        key = "gemini" if provider == "google" else provider
        config = self.providers.get(key)
        return config.api_key if config else None

    @classmethod
    def from_config(cls) -> "ProviderSettings":
        return cls(
            providers={
                name: ProviderConfig(api_key=key)
                for name, key in EngineConfig.provider_api_keys().items()
            }
        )


def build_generate_headers(provider: str | None, settings: ProviderSettings) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if not provider:
        return headers
    header = PROVIDER_KEY_HEADERS.get(provider)
    api_key = settings.api_key_for(provider)
    if header and api_key:
        headers[header] = api_key
    return headers


class GenerationRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    node_id: str
    media_type: MediaType
    provider: str | None = None
    prompt: str | None = None
    images: list[str] = Field(default_factory=list)
    videos: list[str] = Field(default_factory=list)
    audio: list[str] = Field(default_factory=list)
    selected_model: SelectedModel | None = None
    model: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    dynamic_inputs: dict[str, str | list[str]] = Field(default_factory=dict)
    options: dict[str, Any] = Field(default_factory=dict)


class GenerationResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    image: str | None = None
    images: list[str] = Field(default_factory=list)
    video: str | None = None
    video_url: str | None = None
    model3d_url: str | None = None
    audio: str | None = None
    audio_url: str | None = None
    text: str | None = None
    error: str | None = None

    @property
    def output_video(self) -> str | None:
        return self.video or self.video_url

    @property
    def output_audio(self) -> str | None:
        return self.audio or self.audio_url


class GenerationClient:
    """Interface: one opaque, cancellable generation call."""

    async def generate(
        self,
        request: GenerationRequest,
        cancel_token: CancelToken | None = None,
    ) -> GenerationResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def _error_message_from_response(response: httpx.Response) -> str:
    error_message = f"HTTP {response.status_code}"
    error_text = response.text
    try:
        payload = response.json()
    except ValueError:
        if error_text:
            error_message += f" - {error_text[:200]}"
        return error_message
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return error_message


class HttpGenerationClient(GenerationClient):
    """Posts generation requests to the editor's HTTP routes."""

    def __init__(
        self,
        settings: ProviderSettings | None = None,
        *,
        generate_url: str | None = None,
        llm_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings or ProviderSettings.from_config()
        self._generate_url = generate_url or EngineConfig.GENERATE_API_URL
        self._llm_url = llm_url or EngineConfig.LLM_API_URL
        self._client = httpx.AsyncClient(
            timeout=timeout or EngineConfig.request_timeout_seconds(),
            transport=transport,
        )

    def _url_for(self, request: GenerationRequest) -> str:
        return self._llm_url if request.media_type == "text" else self._generate_url

    async def _post(self, request: GenerationRequest) -> GenerationResult:
        headers = build_generate_headers(request.provider, self._settings)
        payload = request.model_dump(mode="json", by_alias=True, exclude_none=True)
        url = self._url_for(request)

        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("Generation request for node %s timed out: %s", request.node_id, e)
            raise NetworkError(
                "Request timed out. Try reducing input sizes or using a simpler prompt.",
                node_id=request.node_id,
            ) from e
        except httpx.TransportError as e:
            logger.warning("Generation request for node %s failed: %s", request.node_id, e)
            raise NetworkError(f"Network error: {e}", node_id=request.node_id) from e

        if response.status_code >= 400:
            raise HttpError(
                response.status_code,
                _error_message_from_response(response),
                node_id=request.node_id,
            )

        try:
            return GenerationResult.model_validate(response.json())
        except ValueError as e:
            raise HttpError(
                response.status_code,
                f"Invalid response from generation service: {e}",
                node_id=request.node_id,
            ) from e

    async def generate(
        self,
        request: GenerationRequest,
        cancel_token: CancelToken | None = None,
    ) -> GenerationResult:
        logger.info(
            "Calling generation service for node %s (media=%s, provider=%s)",
            request.node_id,
            request.media_type,
            request.provider,
        )
        if cancel_token is None:
            return await self._post(request)
        return await cancel_token.run(self._post(request))

    async def aclose(self) -> None:
        await self._client.aclose()
