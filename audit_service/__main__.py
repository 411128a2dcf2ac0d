"""
Process entry point: ``python -m audit_service`` or ``audit-service``.
"""

import asyncio
import logging
import signal
import sys

from audit_service.config import get_settings
from audit_service.errors import AuditServiceError
from audit_service.lifecycle import ServiceLifecycle
from audit_service.main import configure_logging
from audit_service.services.subscriber import PostgresEventSubscriber
from audit_service.store import AuditStore

logger = logging.getLogger("audit_service")


SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


async def serve() -> None:
    settings = get_settings()
    store = AuditStore.from_settings(settings)
    subscriber = PostgresEventSubscriber(settings.event_dsn)
    lifecycle = ServiceLifecycle(settings, store, subscriber)

    # A signal during start() still ends in stop()
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, shutdown.set)

    try:
        await lifecycle.start()
        waiters = [
            asyncio.ensure_future(shutdown.wait()),
            asyncio.ensure_future(lifecycle.wait_closed()),
        ]
        done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for waiter in pending:
            waiter.cancel()
    finally:
        await lifecycle.stop()
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)


def main() -> int:
    configure_logging(get_settings())
    try:
        asyncio.run(serve())
    except AuditServiceError as e:
        logger.error(f"Startup failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
