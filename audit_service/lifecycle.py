"""
Service lifecycle: startup fan-out, readiness gating and teardown.

Startup launches three actions at once:

1. store initialization (mandatory)
2. HTTP listener bind (mandatory)
3. event subscription wired into the ingestion pipeline (best effort)

The service is READY once 1 and 2 have succeeded, whatever happened to 3.
"""

import asyncio
import contextlib
import logging
import socket
from enum import Enum
from typing import Optional

import uvicorn
from fastapi import FastAPI

from audit_service.config import Settings
from audit_service.errors import ListenerBindError, SubscriptionError
from audit_service.main import create_app
from audit_service.services.pipeline import IngestionPipeline
from audit_service.services.subscriber import EventSubscriber
from audit_service.store import AuditStore


class LifecycleState(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


class ListenerServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the process entry point."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


class ServiceLifecycle:
    """
    Coordinates the store, the query listener and the event subscription.

    The store is owned here and handed explicitly to the pipeline and to the
    FastAPI application.
    """

    def __init__(
        self,
        settings: Settings,
        store: AuditStore,
        subscriber: EventSubscriber,
        app: Optional[FastAPI] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.settings = settings
        self.store = store
        self.subscriber = subscriber
        self._log = logger or logging.getLogger(__name__)
        self.pipeline = IngestionPipeline(store)
        self.app = app or create_app(settings, store)
        self.app.state.lifecycle = self
        self.state = LifecycleState.CREATED
        self.bound_port: Optional[int] = None
        self._store_ready = asyncio.Event()
        self._socket: Optional[socket.socket] = None
        self._server: Optional[ListenerServer] = None
        self._server_task: Optional[asyncio.Task] = None
        self._subscription_task: Optional[asyncio.Task] = None

    @property
    def ingesting(self) -> bool:
        return self.pipeline.running

    async def start(self) -> None:
        """
        Bring the service up.

        Raises:
            StoreInitError: If the audit table could not be prepared
            ListenerBindError: If the HTTP listener could not be bound
        """
        self.state = LifecycleState.STARTING
        self._log.info(f"Starting {self.settings.app_name}...")

        # Outside the join: a missing upstream never blocks readiness
        self._subscription_task = asyncio.create_task(self._subscribe(), name="subscribe")

        results = await asyncio.gather(
            self._initialize_store(),
            self._bind_listener(),
            return_exceptions=True
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            self.state = LifecycleState.FAILED
            self._log.error(f"{self.settings.app_name} failed to start: {failures[0]}")
            await self._teardown()
            raise failures[0]

        self.state = LifecycleState.READY
        self._log.info(f"{self.settings.app_name} ready on port {self.bound_port}")

    async def _initialize_store(self) -> None:
        await self.store.initialize(self.settings.drop)
        self._store_ready.set()

    async def _bind_listener(self) -> None:
        host, port = self.settings.host, self.settings.port
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            self._socket = socket.create_server((host, port), family=family)
        except OSError as e:
            raise ListenerBindError(f"Cannot listen on {host}:{port}: {e}") from e
        self.bound_port = self._socket.getsockname()[1]

        config = uvicorn.Config(
            self.app,
            lifespan="off",
            log_config=None,
            access_log=self.settings.debug
        )
        self._server = ListenerServer(config)
        self._server_task = asyncio.create_task(
            self._server.serve(sockets=[self._socket]), name="http-listener"
        )
        while not self._server.started:
            if self._server_task.done():
                cause = None if self._server_task.cancelled() else self._server_task.exception()
                raise ListenerBindError(
                    f"HTTP listener on {host}:{port} exited during startup"
                ) from cause
            await asyncio.sleep(0.01)
        self._log.info(f"Query endpoint listening on {host}:{self.bound_port}")

    async def _subscribe(self) -> bool:
        topic = self.settings.event_topic
        try:
            stream = await self.subscriber.subscribe(topic)
        except SubscriptionError as e:
            self._log.error(
                f"No {topic} service, did you start the publisher? Ingestion is idle: {e}"
            )
            return False
        except Exception as e:
            self._log.exception(f"Subscription to {topic} failed, ingestion is idle: {e}")
            return False

        # Records delivered meanwhile wait in the stream
        await self._store_ready.wait()
        try:
            self.pipeline.start(stream)
        except Exception as e:
            self._log.exception(f"Cannot start ingestion from {topic}: {e}")
            stream.close()
            return False
        return True

    async def wait_closed(self) -> None:
        """Wait until the HTTP listener has exited."""
        if self._server_task is not None:
            await asyncio.shield(self._server_task)

    async def stop(self) -> None:
        """Stop accepting requests, stop ingestion, then close the store."""
        if self.state in (LifecycleState.CREATED, LifecycleState.STOPPED):
            return
        self._log.info(f"Shutting down {self.settings.app_name}...")
        await self._teardown()
        self.state = LifecycleState.STOPPED
        self._log.info(f"{self.settings.app_name} stopped")

    async def _teardown(self) -> None:
        if self._server is not None:
            # uvicorn lets in-flight requests complete before serve() returns
            self._server.should_exit = True
            if self._server_task is not None:
                await asyncio.gather(self._server_task, return_exceptions=True)
        elif self._socket is not None:
            self._socket.close()
        self._server = None
        self._server_task = None
        self._socket = None

        if self._subscription_task is not None:
            self._subscription_task.cancel()
            await asyncio.gather(self._subscription_task, return_exceptions=True)
        self._subscription_task = None

        await self.pipeline.stop()
        await self.subscriber.close()
        await self.store.close()
        self._store_ready.clear()
