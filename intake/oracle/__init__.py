"""Language oracle abstractions and implementations."""

from .base import FieldKind, Intent, Oracle, ValidationResult, YesNo

__all__ = ["FieldKind", "Intent", "Oracle", "ValidationResult", "YesNo"]
