"""
Event dispatch core for the RabbitMQ topic exchange.
Implements typed envelopes, declared topology, a single owned connection,
publishing, and per-kind consumers with bounded retry and dead-lettering.
"""

from .envelope import EventEnvelope, EventKind, PAYLOAD_MODELS
from .topology import TOPOLOGY, TopologyEntry, TopologyManager, DeclaredTopology, topology_entry_for
from .connection import BrokerConnection, mask_url
from .publisher import EventPublisher
from .handlers import EventHandler, HandlerRegistry
from .consumer import ConsumerOrchestrator, OrchestratorState, RetryPolicy

__all__ = [
    'EventEnvelope',
    'EventKind',
    'PAYLOAD_MODELS',
    'TOPOLOGY',
    'TopologyEntry',
    'TopologyManager',
    'DeclaredTopology',
    'topology_entry_for',
    'BrokerConnection',
    'mask_url',
    'EventPublisher',
    'EventHandler',
    'HandlerRegistry',
    'ConsumerOrchestrator',
    'OrchestratorState',
    'RetryPolicy',
]
