"""
Consumer orchestration: one subscription per registered event kind.

Every delivery ends in exactly one terminal action:

* ``ack``                 handler succeeded
* ``nack(requeue=True)``  handler failed and the retry budget is not spent,
                          or the orchestrator is not running
* ``reject(requeue=False)`` malformed body, wrong kind for the queue, or the
                          retry budget is spent; dead-lettered when the queue
                          has a dead-letter exchange
"""
import asyncio
import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from aio_pika.abc import AbstractIncomingMessage

from dispatcher.core.events.connection import BrokerConnection
from dispatcher.core.events.envelope import EventEnvelope, EventKind
from dispatcher.core.events.handlers import HandlerRegistry
from dispatcher.core.exceptions import MalformedMessageException

logger = logging.getLogger(__name__)

DELIVERY_COUNT_HEADER = "x-delivery-count"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times a failed event is redelivered before it is dead-lettered.

    ``max_retries=None`` means unlimited redelivery.
    """
    max_retries: Optional[int] = 5

    def should_requeue(self, failures: int) -> bool:
        """``failures`` counts the failure being handled right now."""
        if self.max_retries is None:
            return True
        return failures <= self.max_retries


class ConsumerOrchestrator:
    def __init__(
        self,
        connection: BrokerConnection,
        registry: HandlerRegistry,
        retry_policy: Optional[RetryPolicy] = None,
        handler_timeout: Optional[float] = None,
        restart_delay: float = 2.0,
    ):
        self.connection = connection
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy()
        # None or 0 disables the deadline
        self.handler_timeout = handler_timeout or None
        self.restart_delay = restart_delay

        self.state = OrchestratorState.IDLE
        self._consumer_tags: Dict[EventKind, str] = {}
        self._failures: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self.state is OrchestratorState.RUNNING

    @property
    def accepting_deliveries(self) -> bool:
        # A queue backlog is pushed as soon as basic.consume succeeds, before start_all returns
        return self.state in (OrchestratorState.STARTING, OrchestratorState.RUNNING)

    @property
    def active_kinds(self) -> List[EventKind]:
        return [kind for kind in EventKind if kind in self._consumer_tags]

    def _all_started(self) -> bool:
        return len(self._consumer_tags) == len(self.registry)

    async def start_all(self) -> bool:
        """
        Connect if needed and start one subscription per registered handler.

        Returns:
            bool: True when every registered kind has an active subscription.
            A kind that fails to subscribe is logged and skipped.

        Raises:
            ConfigurationException: a kind has no handler
            BrokerConnectionException / TopologyException: connect failed; state is back to IDLE
        """
        async with self._lock:
            if self.state is OrchestratorState.RUNNING:
                logger.info("Consumers already running")
                return self._all_started()

            self.registry.validate()
            self.state = OrchestratorState.STARTING
            logger.info("🚀 Starting all event consumers...")

            try:
                await self.connection.connect()
            except Exception as e:
                self.state = OrchestratorState.IDLE
                logger.error(f"❌ Failed to start consumers: {e}")
                raise

            topology = self.connection.topology
            for kind, handler in self.registry.items():
                queue = topology.queues.get(kind) if topology is not None else None
                if queue is None:
                    logger.error(f"No queue declared for {kind.value}, skipping consumer", extra={"event_kind": kind.value})
                    continue
                try:
                    tag = await queue.consume(functools.partial(self._on_message, kind))
                except Exception as e:
                    logger.error(
                        f"Failed to start consumer for {kind.value}: {e}",
                        extra={"event_kind": kind.value, "queue": queue.name},
                    )
                    continue
                self._consumer_tags[kind] = tag
                logger.info(
                    f"Consumer for {kind.value} started with {handler.name}",
                    extra={"event_kind": kind.value, "queue": queue.name},
                )

            self.state = OrchestratorState.RUNNING
            started = [kind.value for kind in self.active_kinds]
            logger.info(
                f"✅ Started {len(started)}/{len(self.registry)} consumers: {', '.join(started) or 'none'}",
                extra={"consumers": started},
            )
            return self._all_started()

    async def stop(self) -> None:
        """Close the connection; active subscriptions end with it."""
        async with self._lock:
            if self.state is OrchestratorState.IDLE and not self.connection.is_ready():
                return
            self.state = OrchestratorState.STOPPING
            logger.info("🛑 Stopping all event consumers...")
            try:
                await self.connection.close()
            finally:
                self._consumer_tags.clear()
                self._failures.clear()
                self.state = OrchestratorState.IDLE
            logger.info("All consumers stopped")

    async def restart(self) -> bool:
        logger.info("🔄 Restarting consumers...")
        await self.stop()
        await asyncio.sleep(self.restart_delay)
        return await self.start_all()

    def connection_lost(self) -> None:
        """Forget subscriptions that died with the connection; the supervisor decides on restart."""
        if self._consumer_tags or self.state is not OrchestratorState.IDLE:
            logger.warning(f"Connection lost while {self.state.value}; {len(self._consumer_tags)} consumers dropped")
        self._consumer_tags.clear()
        self._failures.clear()
        if self.state is OrchestratorState.RUNNING:
            self.state = OrchestratorState.IDLE

    def status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "state": self.state.value,
            "consumers": [kind.value for kind in self.active_kinds],
            "broker_ready": self.connection.is_ready(),
        }

    async def _on_message(self, kind: EventKind, message: AbstractIncomingMessage) -> None:
        if not self.accepting_deliveries:
            logger.warning(
                f"Delivery for {kind.value} while {self.state.value}, requeueing",
                extra={"event_kind": kind.value, "message_id": message.message_id},
            )
            await self._settle(message, "nack", kind, requeue=True)
            return

        try:
            envelope = EventEnvelope.deserialize(message.body)
        except MalformedMessageException as e:
            logger.error(
                f"Malformed message on {kind.value} queue: {e.message}",
                extra={
                    "event_kind": kind.value,
                    "message_id": message.message_id,
                    "delivery_tag": message.delivery_tag,
                    "errors": e.details.get("errors"),
                },
            )
            await self._settle(message, "reject", kind, requeue=False)
            return
        except Exception as e:
            logger.error(
                f"Could not decode message on {kind.value} queue: {e}",
                extra={"event_kind": kind.value, "message_id": message.message_id, "delivery_tag": message.delivery_tag},
                exc_info=True,
            )
            await self._settle(message, "reject", kind, requeue=False)
            return

        log_context = {"event_kind": envelope.kind.value, "event_id": envelope.id}

        if envelope.kind is not kind:
            logger.error(
                f"Envelope of kind {envelope.kind.value} delivered on {kind.value} queue",
                extra={**log_context, "queue_kind": kind.value},
            )
            await self._settle(message, "reject", kind, envelope, requeue=False)
            return

        handler = self.registry.get(kind)
        logger.info(f"Processing {kind.value} event {envelope.id}", extra=log_context)

        try:
            if self.handler_timeout:
                await asyncio.wait_for(handler(envelope), timeout=self.handler_timeout)
            else:
                await handler(envelope)
        except asyncio.TimeoutError:
            logger.error(f"Handler {handler.name} timed out after {self.handler_timeout}s", extra=log_context)
            await self._handle_failure(message, envelope)
            return
        except Exception as e:
            logger.error(f"Handler {handler.name} failed for {kind.value} event {envelope.id}: {e}", extra=log_context, exc_info=True)
            await self._handle_failure(message, envelope)
            return

        self._failures.pop(envelope.id, None)
        await self._settle(message, "ack", kind, envelope)
        logger.info(f"Processed {kind.value} event {envelope.id}", extra=log_context)

    def _count_failure(self, message: AbstractIncomingMessage, envelope: EventEnvelope) -> int:
        # Quorum queues report prior failed deliveries; classic queues do not.
        header = (message.headers or {}).get(DELIVERY_COUNT_HEADER)
        if header is not None:
            try:
                failures = int(header) + 1
            except (TypeError, ValueError):
                failures = None
            if failures is not None:
                return failures
        failures = self._failures.get(envelope.id, 0) + 1
        self._failures[envelope.id] = failures
        return failures

    async def _handle_failure(self, message: AbstractIncomingMessage, envelope: EventEnvelope) -> None:
        failures = self._count_failure(message, envelope)
        log_context = {"event_kind": envelope.kind.value, "event_id": envelope.id, "failures": failures}

        if self.retry_policy.should_requeue(failures):
            logger.warning(f"Requeueing {envelope.kind.value} event {envelope.id} (failure {failures})", extra=log_context)
            await self._settle(message, "nack", envelope.kind, envelope, requeue=True)
            return

        self._failures.pop(envelope.id, None)
        logger.error(
            f"Retry budget of {self.retry_policy.max_retries} spent for {envelope.kind.value} event {envelope.id}, dead-lettering",
            extra=log_context,
        )
        await self._settle(message, "reject", envelope.kind, envelope, requeue=False)

    async def _settle(
        self,
        message: AbstractIncomingMessage,
        action: str,
        kind: EventKind,
        envelope: Optional[EventEnvelope] = None,
        **kwargs: Any,
    ) -> None:
        try:
            await getattr(message, action)(**kwargs)
        except Exception as e:
            # Channel gone; the broker requeues unacknowledged deliveries on disconnect.
            logger.error(
                f"Failed to {action} {kind.value} message: {e}",
                extra={"event_kind": kind.value, "event_id": envelope.id if envelope else message.message_id},
            )
