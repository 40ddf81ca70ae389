"""RabbitMQ event dispatch service for NextEcom domain events."""

__version__ = "1.0.0"
