"""Process lifecycle: builds the engine stack once and tears it down on shutdown."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional

from .collaborators import Collaborators
from .config import NurtureConfig, load_config
from .dispatch import TriggerDispatcher
from .engine import WorkflowEngine
from .persistence import EnrollmentRepository, get_repository
from .queues import BaseWorkQueue, get_queue
from .scheduler import Scheduler
from .service import WorkflowService

logger = logging.getLogger(__name__)


class NurtureRuntime:
    """Owns the repository, queue, engine, scheduler, dispatcher and service."""

    def __init__(
        self,
        repository: EnrollmentRepository,
        queue: BaseWorkQueue,
        collaborators: Collaborators,
        config: Optional[NurtureConfig] = None,
    ) -> None:
        self.config = config or NurtureConfig()
        self.repository = repository
        self.queue = queue
        self.collaborators = collaborators
        scheduler_config = self.config.scheduler
        self.engine = WorkflowEngine(
            repository,
            queue,
            collaborators,
            email_defaults=self.config.email,
            lease_seconds=scheduler_config.lease_seconds,
            paused_recheck_seconds=scheduler_config.paused_recheck_seconds,
        )
        self.scheduler = Scheduler.from_config(self.engine, queue, scheduler_config)
        self.dispatcher = TriggerDispatcher(repository, self.engine)
        self.service = WorkflowService(repository)
        self._stop = asyncio.Event()
        self._started = False
        self._signals_installed = False

    @classmethod
    def from_config(
        cls, config: Optional[NurtureConfig] = None, collaborators: Optional[Collaborators] = None
    ) -> "NurtureRuntime":
        config = config or load_config()
        if collaborators is None:
            raise ValueError("A runtime needs collaborators (delivery and contact store)")
        return cls(
            repository=get_repository(config=config),
            queue=get_queue(config=config),
            collaborators=collaborators,
            config=config,
        )

    async def start(self) -> None:
        if self._started:
            return
        await self.queue.connect()
        self._started = True
        logger.info(f"Runtime started with {type(self.queue).__name__} and {type(self.repository).__name__}")

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll for due work until ``shutdown`` is called or ``lifespan`` seconds pass."""
        await self.start()
        if lifespan is None:
            await self.scheduler.run(self._stop)
            return
        loop = asyncio.get_running_loop()
        timer = loop.call_later(lifespan, self._stop.set)
        try:
            await self.scheduler.run(self._stop)
        finally:
            timer.cancel()

    def request_shutdown(self) -> None:
        self._stop.set()

    async def shutdown(self) -> None:
        """Stop polling and close the queue, repository and webhook client."""
        self._stop.set()
        self.remove_signal_handlers()
        if self._started:
            await self.queue.disconnect()
            self._started = False
        await self.repository.close()
        webhooks = self.collaborators.webhooks
        if webhooks is not None and hasattr(webhooks, "aclose"):
            await webhooks.aclose()
        logger.info("Runtime shut down")

    def install_signal_handlers(self) -> None:
        """Wire SIGINT and SIGTERM to a graceful stop (Unix only)."""
        if sys.platform == "win32" or self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown)
        self._signals_installed = True

    def remove_signal_handlers(self) -> None:
        if not self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        self._signals_installed = False

    async def __aenter__(self) -> "NurtureRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()
