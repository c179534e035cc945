"""Per-process pipeline runtime.

A Celery worker process is synchronous; each one owns a private event loop
and the async resources bound to it (engine, session factory). Tasks run
their coroutines on that loop so connections are reused across tasks.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from celery import Celery
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from hls_pipeline.core.config import Settings
from hls_pipeline.core.database import create_engine, create_session_factory
from hls_pipeline.core.logging import log_info
from hls_pipeline.core.storage import Storage, create_storage
from hls_pipeline.modules.asset.service import AssetStateTracker
from hls_pipeline.modules.job.service import CeleryJobQueue, JobDispatcher, JobQueue
from hls_pipeline.modules.job.tasks import RetryConfig
from hls_pipeline.modules.transcoding.service import TranscodingService

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PipelineRuntime:
    """Wires the pipeline components for one process."""

    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        storage: Storage,
        queue: JobQueue,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.storage = storage
        self.queue = queue
        self._loop = loop

        self.tracker = AssetStateTracker(session_factory)
        self.service = TranscodingService.from_settings(settings, storage)
        self.dispatcher = JobDispatcher(
            session_factory=session_factory,
            queue=queue,
            tracker=self.tracker,
            service=self.service,
            storage=storage,
            retry_config=RetryConfig.from_settings(settings),
            default_ladder=settings.TRANSCODE_LADDER,
            cancel_poll_interval=settings.CANCEL_POLL_INTERVAL,
            busy_retry_delay=settings.ASSET_BUSY_RETRY_DELAY,
            stale_after_seconds=settings.stale_job_timeout,
            sweep_batch_size=settings.SWEEP_BATCH_SIZE,
        )

    @classmethod
    def from_settings(cls, settings: Settings, celery_app: Celery) -> "PipelineRuntime":
        engine = create_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        runtime = cls(
            settings=settings,
            engine=engine,
            session_factory=create_session_factory(engine),
            storage=create_storage(settings),
            queue=CeleryJobQueue(celery_app),
        )
        log_info(
            logger,
            "Pipeline runtime started",
            storage_backend=settings.STORAGE_BACKEND,
            parallelism=settings.TRANSCODE_PARALLELISM,
            ladder=[variant.label for variant in settings.TRANSCODE_LADDER],
        )
        return runtime

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
        return self._loop

    def run(self, coro: Awaitable[T]) -> T:
        """Run a coroutine to completion on the runtime loop."""
        return self.loop.run_until_complete(coro)

    async def aclose(self) -> None:
        await self.engine.dispose()
        log_info(logger, "Pipeline runtime stopped")

    def close(self) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.run_until_complete(self.aclose())
        self._loop.close()
