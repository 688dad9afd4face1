"""
Output persistence hook.

Completed generations and sink outputs are handed to an OutputPersistence
without being awaited: a slow or failing save never holds up, or fails, a run.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal

import httpx
from pydantic import BaseModel

from mediaflow.config import EngineConfig

logger = logging.getLogger(__name__)

OutputKind = Literal["image", "video", "audio", "model3d"]


class SavedOutput(BaseModel):
    node_id: str
    kind: OutputKind
    content: str
    prompt: str | None = None
    output_id: str | None = None
    filename: str | None = None
    subdirectory: str | None = None


class OutputPersistence:
    async def save(self, output: SavedOutput) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HttpOutputPersistence(OutputPersistence):
    """Posts outputs to the editor's save-generation route."""

    def __init__(
        self,
        save_url: str,
        *,
        directory: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._save_url = save_url
        self._directory = directory
        self._client = httpx.AsyncClient(timeout=60.0, transport=transport)

    def _directory_for(self, output: SavedOutput) -> str | None:
        if self._directory and output.subdirectory:
            return f"{self._directory.rstrip('/')}/{output.subdirectory}"
        return self._directory

    async def save(self, output: SavedOutput) -> None:
        payload: dict[str, Any] = {
            "directoryPath": self._directory_for(output),
            output.kind: output.content,
            "prompt": output.prompt,
            "imageId": output.output_id,
            "customFilename": output.filename,
            "createDirectory": True,
        }
        response = await self._client.post(
            self._save_url,
            json={k: v for k, v in payload.items() if v is not None},
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


def persistence_from_config() -> OutputPersistence | None:
    if not EngineConfig.SAVE_GENERATION_URL:
        return None
    return HttpOutputPersistence(
        EngineConfig.SAVE_GENERATION_URL,
        directory=EngineConfig.GENERATIONS_PATH,
    )


_pending_saves: set[asyncio.Task] = set()


def _log_save_failure(task: asyncio.Task) -> None:
    _pending_saves.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Failed to save output: %s", exc)


def schedule_save(persistence: OutputPersistence | None, output: SavedOutput) -> asyncio.Task | None:
    """Fire-and-forget a save. Failures are logged, never raised."""
    if persistence is None:
        return None
    task = asyncio.create_task(persistence.save(output))
    _pending_saves.add(task)
    task.add_done_callback(_log_save_failure)
    return task


async def drain_pending_saves() -> None:
    """Wait for outstanding saves (used on shutdown)."""
    if _pending_saves:
        await asyncio.gather(*list(_pending_saves), return_exceptions=True)
