"""
Main entry point for the Volume Unregister Operator.

This module initializes and starts the controller and, when enabled, the
admission webhook server.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from admission import AdmissionHandler
from config import Config, get_config
from controller import Controller
from events import EventRecorder
from kube import ClusterClient, KubeApiClient
from reconcilers import UnregisterVolumeReconciler
from webhook import WebhookServer

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


class Application:
    """Main application that orchestrates the controller and webhook."""

    def __init__(
        self,
        config: Optional[Config] = None,
        client: Optional[ClusterClient] = None,
        run_controller: bool = True,
    ):
        self.config = config or get_config()
        self.client = client
        self.run_controller = run_controller
        self.controller: Optional[Controller] = None
        self.webhook: Optional[WebhookServer] = None
        self.running = False
        self._initialized = False
        self._stop_task: Optional[asyncio.Task] = None

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing Volume Unregister Operator")

        if self.client is None:
            self.client = KubeApiClient.from_config(self.config.kubernetes)

        if self.run_controller:
            self.controller = Controller(
                client=self.client,
                reconciler=UnregisterVolumeReconciler(),
                recorder=EventRecorder(self.client),
                config=self.config.controller,
            )

        webhook_config = self.config.webhook
        if webhook_config.enabled:
            self.webhook = WebhookServer(
                handler=AdmissionHandler(self.client),
                host=webhook_config.host,
                port=webhook_config.port,
                cert_file=webhook_config.cert_file,
                key_file=webhook_config.key_file,
            )

        self._initialized = True
        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self._initialized:
            await self.initialize()

        self.running = True
        tasks: List[asyncio.Task] = []
        if self.controller:
            tasks.append(asyncio.create_task(self.controller.start()))
        if self.webhook:
            tasks.append(asyncio.create_task(self.webhook.start()))

        if not tasks:
            logger.warning("Nothing to run: controller and webhook are disabled")
            return

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping Volume Unregister Operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        if self.webhook:
            await self.webhook.stop()

        if self.client:
            await self.client.close()

        logger.info("Volume Unregister Operator stopped")

    def request_stop(self) -> asyncio.Task:
        """Schedule stop() from a signal handler, once."""
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self.stop())
        return self._stop_task


async def main(app: Optional[Application] = None):
    """Main entry point."""
    app = app or Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        app.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        if app._stop_task is not None:
            await app._stop_task
        await app.stop()


if __name__ == "__main__":
    setup_logging(get_config().log_level)
    asyncio.run(main())
