"""Writes finished images into a local directory."""

import asyncio
import base64
import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from canvas_studio.services.pipeline import DownloadSink

_logger = logging.getLogger(__name__)


@dataclass
class LocalDownloadSink(DownloadSink):
    """Saves inline or remote images under a target directory."""

    directory: Path
    http_client: httpx.AsyncClient

    @classmethod
    def create(cls, directory: str) -> "LocalDownloadSink":
        """Create a sink with a managed httpx session."""
        return cls(directory=Path(directory), http_client=httpx.AsyncClient())

    async def save(self, source: str, file_name: str) -> None:
        """Write the image bytes to directory/file_name."""
        if source.startswith("data:"):
            _, _, encoded = source.partition(",")
            content = base64.b64decode(encoded)
        else:
            response = await self.http_client.get(source, timeout=60)
            response.raise_for_status()
            content = response.content
        target = self.directory / Path(file_name).name
        await asyncio.to_thread(self._write, target, content)
        _logger.info("Downloaded %s (%s bytes)", target, len(content))

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self.http_client.aclose()

    @staticmethod
    def _write(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
