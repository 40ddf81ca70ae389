"""
Broker topology: one durable topic exchange, one durable queue per event kind,
and the bindings between them.

Declarations are idempotent under identical parameters. A declaration that
conflicts with what already exists on the broker (PRECONDITION_FAILED) is a
configuration error and is raised as ``TopologyException``; it is never
reconciled by deleting or re-creating anything.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue
from aio_pika.exceptions import ChannelClosed, ChannelNotFoundEntity, ChannelPreconditionFailed

from dispatcher.core.events.envelope import EventKind
from dispatcher.core.exceptions import TopologyException, UnknownEventKindException

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TopologyEntry:
    queue_name: str
    routing_key: str
    durable: bool = True

    @property
    def dead_letter_queue_name(self) -> str:
        return f"{self.queue_name}.dead"


TOPOLOGY: Dict[EventKind, TopologyEntry] = {
    EventKind.LOW_STOCK_ALERT: TopologyEntry(
        queue_name="low_stock_alerts",
        routing_key="low_stock_alert",
    ),
    EventKind.NEW_CUSTOMER_REGISTRATION: TopologyEntry(
        queue_name="new_customer_registrations",
        routing_key="new_customer_registration",
    ),
    EventKind.NEW_PRODUCT_CREATION: TopologyEntry(
        queue_name="new_product_creations",
        routing_key="new_product_creation",
    ),
    EventKind.NEW_ORDER_CREATION: TopologyEntry(
        queue_name="new_order_creations",
        routing_key="new_order_creation",
    ),
    EventKind.INVOICE_GENERATION: TopologyEntry(
        queue_name="invoice_generation",
        routing_key="invoice_generation",
    ),
}


def topology_entry_for(kind: Any, topology: Optional[Dict[EventKind, TopologyEntry]] = None) -> TopologyEntry:
    """Look up the queue/routing key for a kind; an unmapped kind is a programming error."""
    table = TOPOLOGY if topology is None else topology
    try:
        return table[kind]
    except (KeyError, TypeError):
        raise UnknownEventKindException(kind)


@dataclass
class DeclaredTopology:
    """Broker objects produced by one ``TopologyManager.setup`` call on one channel."""
    exchange: AbstractExchange
    queues: Dict[EventKind, AbstractQueue] = field(default_factory=dict)
    dead_letter_exchange: Optional[AbstractExchange] = None
    dead_letter_queues: Dict[EventKind, AbstractQueue] = field(default_factory=dict)


@dataclass
class QueueInfo:
    kind: EventKind
    queue_name: str
    message_count: int
    consumer_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "queue": self.queue_name,
            "message_count": self.message_count,
            "consumer_count": self.consumer_count,
        }


class TopologyManager:
    """
    Declares the exchange, queues and bindings for every topology entry.

    Dead-lettering is part of the bounded retry policy: rejected messages
    (malformed, or out of retries) are routed through ``<exchange>.dlx`` into
    ``<queue>.dead`` instead of being dropped.
    """

    def __init__(
        self,
        exchange_name: str,
        entries: Optional[Dict[EventKind, TopologyEntry]] = None,
        dead_letter_enabled: bool = True,
    ):
        self.exchange_name = exchange_name
        self.entries = dict(TOPOLOGY if entries is None else entries)
        self.dead_letter_enabled = dead_letter_enabled

    @property
    def dead_letter_exchange_name(self) -> str:
        return f"{self.exchange_name}.dlx"

    def queue_arguments(self, entry: TopologyEntry) -> Optional[Dict[str, Any]]:
        if not self.dead_letter_enabled:
            return None
        return {
            "x-dead-letter-exchange": self.dead_letter_exchange_name,
            "x-dead-letter-routing-key": entry.routing_key,
        }

    async def setup(self, channel: AbstractChannel) -> DeclaredTopology:
        """
        Declare the whole topology on ``channel``.

        Raises:
            TopologyException: a declaration conflicts with an existing exchange or queue
        """
        resource = self.exchange_name
        try:
            exchange = await channel.declare_exchange(
                self.exchange_name,
                type=ExchangeType.TOPIC,
                durable=True,
            )
            declared = DeclaredTopology(exchange=exchange)
            logger.info(f"Exchange {self.exchange_name} declared", extra={"exchange": self.exchange_name})

            if self.dead_letter_enabled:
                resource = self.dead_letter_exchange_name
                declared.dead_letter_exchange = await channel.declare_exchange(
                    self.dead_letter_exchange_name,
                    type=ExchangeType.DIRECT,
                    durable=True,
                )

            for kind, entry in self.entries.items():
                resource = entry.queue_name
                queue = await channel.declare_queue(
                    entry.queue_name,
                    durable=entry.durable,
                    arguments=self.queue_arguments(entry),
                )
                await queue.bind(exchange, routing_key=entry.routing_key)
                declared.queues[kind] = queue

                if declared.dead_letter_exchange is not None:
                    resource = entry.dead_letter_queue_name
                    dead_queue = await channel.declare_queue(entry.dead_letter_queue_name, durable=True)
                    await dead_queue.bind(declared.dead_letter_exchange, routing_key=entry.routing_key)
                    declared.dead_letter_queues[kind] = dead_queue

                logger.info(
                    f"Queue {entry.queue_name} set up with routing key {entry.routing_key}",
                    extra={"event_kind": kind.value, "queue": entry.queue_name, "routing_key": entry.routing_key},
                )

        except ChannelPreconditionFailed as e:
            logger.error(f"Conflicting declaration for {resource}: {e}")
            raise TopologyException(
                message=f"Declaration of {resource} conflicts with the existing broker topology: {e}",
                resource=resource,
            ) from e

        return declared

    async def inspect(self, channel: AbstractChannel) -> Dict[EventKind, QueueInfo]:
        """
        Report message and consumer counts per queue without declaring anything.

        Raises:
            TopologyException: a queue does not exist on the broker
        """
        report: Dict[EventKind, QueueInfo] = {}
        for kind, entry in self.entries.items():
            try:
                queue = await channel.declare_queue(entry.queue_name, passive=True)
            except (ChannelNotFoundEntity, ChannelClosed) as e:
                raise TopologyException(
                    message=f"Queue {entry.queue_name} is not declared: {e}",
                    resource=entry.queue_name,
                ) from e
            result = queue.declaration_result
            report[kind] = QueueInfo(
                kind=kind,
                queue_name=entry.queue_name,
                message_count=result.message_count or 0,
                consumer_count=result.consumer_count or 0,
            )
        return report
