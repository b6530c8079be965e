"""Background reclamation of TEMP attachments nobody confirmed before they expired."""

import asyncio
import logging
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.attachments.service import AttachmentLifecycle
from src.core.config import settings
from src.core.storage import BlobGateway
from src.shared.utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class Ticker(Protocol):
    """Blocks until the next sweep is due."""

    async def wait(self) -> None: ...


class IntervalTicker:
    def __init__(self, interval: float):
        self.interval = interval

    async def wait(self) -> None:
        await asyncio.sleep(self.interval)


class ExpirationSweeper:
    """
    One scheduler loop, at most one sweep in flight.

    A tick that arrives while a sweep is still running is skipped, not queued.
    Errors inside a sweep are logged and the loop keeps ticking.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blob_gateway: BlobGateway,
        clock: Clock | None = None,
        ticker: Ticker | None = None,
    ):
        self.session_factory = session_factory
        self.blob_gateway = blob_gateway
        self.clock = clock or system_clock
        self.ticker = ticker or IntervalTicker(settings.attachment_sweep_interval_seconds)
        self._running = False
        self._loop_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        """True while a sweep is in progress."""
        return self._running

    def start(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._loop(), name="attachment-expiration-sweeper")
        logger.info("Attachment expiration sweeper started")

    async def stop(self) -> None:
        """Stop ticking and let an in-flight sweep finish."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        await self.wait_idle()
        logger.info("Attachment expiration sweeper stopped")

    async def wait_idle(self) -> None:
        """Wait for the sweep started by the loop, if any."""
        if self._sweep_task is not None:
            await asyncio.gather(self._sweep_task, return_exceptions=True)

    async def _loop(self) -> None:
        while True:
            await self.ticker.wait()
            if self._sweep_task is not None and not self._sweep_task.done():
                logger.warning("Previous attachment sweep still running; skipping this tick")
                continue
            self._sweep_task = asyncio.create_task(self.run_once())

    async def run_once(self) -> int | None:
        """
        Run one sweep now.

        Returns the number of expired attachments released, or None when the
        sweep was skipped or failed.
        """
        if self._running:
            logger.warning("Attachment sweep already running; skipping")
            return None

        self._running = True
        try:
            return await self._sweep()
        except Exception:
            logger.exception("Attachment sweep failed")
            return None
        finally:
            self._running = False

    async def _sweep(self) -> int:
        now = self.clock.now()
        logger.info("Starting sweep of temporary attachments expired before %s", now)

        async with self.session_factory() as session:
            lifecycle = AttachmentLifecycle(session, self.blob_gateway, self.clock)
            expired = await lifecycle.find_expired_temp(now)
            if not expired:
                logger.info("No expired temporary attachments found")
                return 0

            logger.info("Found %d expired temporary attachment(s)", len(expired))
            await lifecycle.release_batch(expired)

        logger.info("Attachment sweep completed, %d expired attachment(s) processed", len(expired))
        return len(expired)
