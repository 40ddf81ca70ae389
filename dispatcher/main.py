#!/usr/bin/env python3
"""
Dispatch service entry point.

Validates configuration, serves the liveness endpoint, starts one RabbitMQ
consumer per event kind and keeps them running until a termination signal.

    python -m dispatcher.main                 # run consumers
    python -m dispatcher.main validate-env    # check configuration and exit
    python -m dispatcher.main inspect-queues  # print queue depths and exit
"""
import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import List, Optional

import uvicorn

from dispatcher.core.config import settings
from dispatcher.core.database import db_manager, initialize_db
from dispatcher.core.environment_validator import EnvironmentValidator, validate_startup_environment
from dispatcher.core.events import (
    BrokerConnection,
    ConsumerOrchestrator,
    EventPublisher,
    HandlerRegistry,
    RetryPolicy,
    TopologyManager,
    mask_url,
)
from dispatcher.core.exceptions import BrokerConnectionException, DispatchException
from dispatcher.core.logging_config import setup_logging
from dispatcher.routes.health import ProcessClock, create_health_app
from dispatcher.services.dispatch_records import DispatchRecordService
from dispatcher.services.email import EmailService
from dispatcher.tasks.event_handlers import build_registry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGQUIT")


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the supervisor."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class DispatchSupervisor:
    """
    Owns the process-wide lifecycle: liveness server, document store,
    broker connection, publisher and consumer orchestrator.
    """

    def __init__(self, config=settings, registry: Optional[HandlerRegistry] = None):
        self.config = config
        self.registry = registry
        self.clock = ProcessClock()
        self.health_app = create_health_app(config.SERVICE_NAME, self.clock)

        self.connection: Optional[BrokerConnection] = None
        self.publisher: Optional[EventPublisher] = None
        self.orchestrator: Optional[ConsumerOrchestrator] = None

        self.exit_code = EXIT_OK
        self._shutdown: Optional[asyncio.Event] = None
        self._health_server: Optional[HealthServer] = None
        self._health_task: Optional[asyncio.Task] = None
        self._background: List[asyncio.Task] = []

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown is not None and self._shutdown.is_set()

    def build_components(self) -> None:
        topology_manager = TopologyManager(
            self.config.BROKER_EXCHANGE_NAME,
            dead_letter_enabled=self.config.BROKER_DEAD_LETTER_ENABLED,
        )
        self.connection = BrokerConnection(
            self.config.RABBITMQ_URL,
            topology_manager=topology_manager,
            prefetch_count=self.config.BROKER_PREFETCH_COUNT,
            heartbeat=self.config.BROKER_HEARTBEAT,
            publisher_confirms=self.config.BROKER_PUBLISHER_CONFIRMS,
            on_connection_lost=self._on_connection_lost,
        )
        self.publisher = EventPublisher(self.connection)

        if self.registry is None:
            self.registry = build_registry(
                EmailService.from_settings(self.config),
                DispatchRecordService(db_manager),
                self.config.ADMIN_EMAIL,
            )
        max_retries = self.config.DISPATCH_MAX_RETRIES
        if not self.config.BROKER_DEAD_LETTER_ENABLED and max_retries is not None:
            # Without a dead-letter queue a spent budget would drop the message
            logger.warning("Dead-lettering disabled, failed events are redelivered without limit")
            max_retries = None
        self.orchestrator = ConsumerOrchestrator(
            self.connection,
            self.registry,
            retry_policy=RetryPolicy(max_retries),
            handler_timeout=self.config.DISPATCH_HANDLER_TIMEOUT,
            restart_delay=self.config.DISPATCH_RESTART_DELAY,
        )

    async def start_consumers(self) -> bool:
        """
        Start the orchestrator, retrying unreachable-broker failures with
        exponential backoff. Topology and configuration errors are not retried.
        """
        attempts = max(1, self.config.DISPATCH_CONNECT_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            if self.shutdown_requested:
                return False
            try:
                await self.orchestrator.start_all()
                return True
            except BrokerConnectionException as e:
                if attempt == attempts:
                    logger.error(f"💥 Could not connect to RabbitMQ after {attempts} attempts: {e.message}")
                    return False
                delay = self.config.DISPATCH_CONNECT_RETRY_DELAY * (2 ** (attempt - 1))
                logger.warning(f"Connect attempt {attempt}/{attempts} failed, retrying in {delay}s: {e.message}")
                await self._pause(delay)
        return False

    async def _pause(self, delay: float) -> None:
        """Sleep for delay seconds, waking early when shutdown is requested."""
        if self._shutdown is None:
            await asyncio.sleep(delay)
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)

    def request_shutdown(self, exit_code: int, reason: str) -> None:
        if self.shutdown_requested:
            return
        self.exit_code = exit_code
        if exit_code == EXIT_OK:
            logger.info(reason)
        else:
            logger.error(reason)
        self._shutdown.set()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for name in SHUTDOWN_SIGNALS:
            sig = getattr(signal, name, None)
            if sig is None:
                continue
            try:
                loop.add_signal_handler(
                    sig, self.request_shutdown, EXIT_OK, f"📡 Received {name}, shutting down gracefully..."
                )
            except NotImplementedError:
                # Windows event loops have no signal handler support
                logger.warning(f"Cannot install handler for {name} on this platform")
        loop.set_exception_handler(self._handle_loop_exception)

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        logger.error(f"💥 Unhandled error: {context.get('message', exc)}", exc_info=exc)
        self.request_shutdown(EXIT_FAILURE, "Shutting down after unhandled error")

    def _on_connection_lost(self, exc: Optional[BaseException]) -> None:
        self.orchestrator.connection_lost()
        if self.shutdown_requested:
            return
        self._background.append(asyncio.ensure_future(self._recover()))

    async def _recover(self) -> None:
        logger.warning("🔄 Attempting to restart consumers after connection loss")
        await self._pause(self.config.DISPATCH_RESTART_DELAY)
        try:
            started = await self.start_consumers()
        except DispatchException as e:
            logger.error(f"Restart failed: {e.message}", extra={"error_code": e.error_code})
            started = False
        if not started:
            self.request_shutdown(EXIT_FAILURE, "Consumers could not be restarted after connection loss")

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.config.DISPATCH_HEARTBEAT_INTERVAL)
            status = self.orchestrator.status() if self.orchestrator else {}
            logger.info(
                f"💓 Consumers heartbeat - {datetime.now(timezone.utc).isoformat()}",
                extra={"status": status},
            )

    async def start_health_server(self) -> None:
        config = uvicorn.Config(
            self.health_app,
            host=self.config.HEALTH_HOST,
            port=self.config.HEALTH_PORT,
            log_level="warning",
            access_log=False,
        )
        self._health_server = HealthServer(config)
        self._health_task = asyncio.create_task(self._health_server.serve())
        logger.info(f"🏥 Health check server running on port {self.config.HEALTH_PORT}")

    async def shutdown(self) -> None:
        if self.orchestrator is not None:
            await self.orchestrator.stop()
        for task in self._background:
            if not task.done() and task is not asyncio.current_task():
                task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        if self._health_server is not None:
            self._health_server.should_exit = True
            with contextlib.suppress(asyncio.TimeoutError, asyncio.CancelledError):
                await asyncio.wait_for(self._health_task, timeout=5)
        await db_manager.close()
        logger.info("✅ Consumers stopped successfully")

    async def run(self) -> int:
        self._shutdown = asyncio.Event()
        logger.info("🚀 Starting RabbitMQ consumers...")

        result = validate_startup_environment()
        if not result.is_valid:
            missing = ", ".join(result.missing_variables) or "none"
            logger.error(
                f"❌ Invalid configuration, missing: {missing}",
                extra={"missing": result.missing_variables, "invalid": [name for name, _ in result.invalid_variables]},
            )
            return EXIT_FAILURE

        self.install_signal_handlers(asyncio.get_running_loop())
        await self.start_health_server()

        try:
            initialize_db(self.config.DATABASE_URL, self.config.is_local)
            await db_manager.create_tables()
            self.build_components()
            if not await self.start_consumers():
                if not self.shutdown_requested:
                    self.exit_code = EXIT_FAILURE
            else:
                self._background.append(asyncio.create_task(self._heartbeat()))
                logger.info("📨 Consumers are now listening for events...")
                await self._shutdown.wait()
        except DispatchException as e:
            logger.error(f"💥 Failed to start consumers: {e.message}", extra={"error_code": e.error_code, "details": e.details})
            self.exit_code = EXIT_FAILURE
        except Exception as e:
            logger.error(f"💥 Fatal error: {e}", exc_info=True)
            self.exit_code = EXIT_FAILURE
        finally:
            await self.shutdown()

        return self.exit_code


def validate_env_command() -> int:
    validator = EnvironmentValidator()
    result = validator.validate_startup_environment()
    for name, value in validator.summary().items():
        print(f"  {name}={value}")
    for warning in result.warnings:
        print(f"⚠️  {warning}")
    if result.is_valid:
        print("✅ All required environment variables are valid!")
        return EXIT_OK
    print(f"❌ {result.error_message}")
    return EXIT_FAILURE


async def inspect_queues_command(config=settings) -> int:
    """Prints message and consumer counts for every queue without declaring anything."""
    connection = BrokerConnection(config.RABBITMQ_URL, heartbeat=config.BROKER_HEARTBEAT)
    topology_manager = TopologyManager(config.BROKER_EXCHANGE_NAME)
    print(f"🔌 Connecting to {mask_url(config.RABBITMQ_URL)}...")
    try:
        await connection.connect()
        report = await topology_manager.inspect(connection.channel)
    except DispatchException as e:
        print(f"❌ {e.message}")
        return EXIT_FAILURE
    finally:
        await connection.close()

    for info in report.values():
        print(f"📋 {info.queue_name}: {info.message_count} messages, {info.consumer_count} consumers")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dispatcher", description="RabbitMQ event dispatch service")
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=["run", "validate-env", "inspect-queues"],
        help="run consumers (default), validate configuration, or print queue depths",
    )
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    parser.add_argument("--log-format", default=settings.LOG_FORMAT, choices=["json", "simple"])
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level, log_format=args.log_format, service=settings.SERVICE_NAME)

    if args.command == "validate-env":
        return validate_env_command()
    if args.command == "inspect-queues":
        return asyncio.run(inspect_queues_command())
    return asyncio.run(DispatchSupervisor().run())


if __name__ == "__main__":
    sys.exit(main())
