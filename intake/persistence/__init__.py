"""Persistence gateway abstractions and implementations."""

from .base import PersistenceGateway

__all__ = ["PersistenceGateway"]
