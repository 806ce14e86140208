"""Pydantic models describing the admission form.

One ``FieldStepDef`` per field-collection state, plus one ``DetailDef``
per name the user can type when asked which detail to change.
"""

from __future__ import annotations

from pydantic import BaseModel

from intake.models.session import FlowState
from intake.oracle.base import FieldKind


class FieldStepDef(BaseModel):
    """One field-collection state of the admission form."""

    state: FlowState
    kind: FieldKind                      # What the oracle validates against
    key: str                             # SessionData attribute
    label: str                           # Shown in the review prompt
    prompt: str
    next_state: FlowState
    numeric: bool = False                # Coerce to int via first digit run


class DetailDef(BaseModel):
    """A correctable detail, addressed by the name the user types."""

    name: str                            # "name" | "email" | ...
    kind: FieldKind
    key: str
    numeric: bool = False
