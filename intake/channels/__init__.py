"""Message channel abstractions and implementations."""

from .base import InboundMessage, MessageChannel

__all__ = ["InboundMessage", "MessageChannel"]
