"""
    Expiry sweep: deletes images whose expiry time has passed.

    Runs on a timer started from the application lifespan and on demand from
    POST /api/cleanup. Images are deleted one at a time, each under its own
    timeout, and a failure only costs that image.
"""
import asyncio
from datetime import datetime
from typing import Optional, Tuple, Union
import logging

from app.storage.s3 import S3Service
from app.image_service.metadata import MetadataService
from app.image_service.service import remove_image
from app.exceptions import ImageNotFoundException
from app.settings import settings

log = logging.getLogger(__name__)


class ExpirySweeper:
    def __init__(
        self,
        metadata: MetadataService,
        s3: S3Service,
        interval: Optional[float] = None,
        item_timeout: Optional[float] = None,
    ):
        self.metadata = metadata
        self.s3 = s3
        self.interval = settings.cleanup_interval_seconds if interval is None else interval
        self.item_timeout = settings.cleanup_item_timeout_seconds if item_timeout is None else item_timeout
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[Union[str, datetime]] = None) -> Tuple[int, int]:
        """Returns (deleted, failed) counts."""
        expired = await asyncio.to_thread(self.metadata.get_expired_images, now)
        deleted = failed = 0
        for image in expired:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(remove_image, self.metadata, self.s3, image.id),
                    timeout=self.item_timeout,
                )
                deleted += 1
            except ImageNotFoundException:
                log.info("Expired image %s was already deleted", image.id)
            except asyncio.TimeoutError:
                failed += 1
                log.error("Timed out deleting expired image %s after %ss", image.id, self.item_timeout)
            except Exception as e:
                failed += 1
                log.error(f"Failed to delete expired image {image.id}: {e}", exc_info=e)

        if expired:
            log.info("Expiry sweep deleted %d of %d images (%d failed)", deleted, len(expired), failed)
        return deleted, failed

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
                await asyncio.to_thread(self.metadata.repair_indexes)
            except Exception as e:
                log.error(f"Scheduled cleanup failed: {e}", exc_info=e)

    def start(self):
        if self.interval <= 0:
            log.info("Scheduled cleanup disabled")
            return
        self._task = asyncio.create_task(self._loop())
        log.info("Scheduled cleanup every %ss", self.interval)

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
