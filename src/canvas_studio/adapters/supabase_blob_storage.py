"""Supabase Storage implementation of blob uploads."""

import asyncio
import logging
from dataclasses import dataclass

from supabase import Client

from canvas_studio.domain.providers import UploadResult
from canvas_studio.services.assets import BlobStorage

_logger = logging.getLogger(__name__)


@dataclass
class SupabaseBlobStorage(BlobStorage):
    """Uploads assets to a public Supabase Storage bucket."""

    client: Client
    bucket: str

    async def upload(
        self, data: bytes, destination_hint: str, content_type: str
    ) -> UploadResult:
        """Upload bytes off the event loop and return the public URL."""
        try:
            url = await asyncio.to_thread(
                self._upload_sync, data, destination_hint, content_type
            )
        except Exception as exc:
            _logger.warning("Supabase upload of %s failed: %s", destination_hint, exc)
            return UploadResult(success=False, error=str(exc))
        return UploadResult(success=True, url=url)

    def _upload_sync(self, data: bytes, path: str, content_type: str) -> str:
        bucket = self.client.storage.from_(self.bucket)
        bucket.upload(
            path,
            data,
            file_options={"content-type": content_type, "upsert": "true"},
        )
        return bucket.get_public_url(path)
