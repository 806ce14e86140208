"""Oracle ABC — the classification and validation contract the flow relies on.

The flow never interprets free text itself.  Every decision that needs
language understanding goes through an Oracle:

  classify_intent()   — is this admission-related, a question, or neither?
  validate_field()    — does this text hold a valid value of a field kind?
  interpret_yes_no()  — did the user agree, decline, or say something else?
  answer_question()   — answer from the static knowledge document
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Intent(str, Enum):
    admission = "AdmissionFlow"
    faq = "AskFAQ"
    unknown = "Unknown"


class YesNo(str, Enum):
    yes = "yes"
    no = "no"
    unknown = "unknown"


class FieldKind(str, Enum):
    name = "name"
    email = "email"
    grade_level = "grade_level"
    semester = "semester"
    referral_source = "referral_source"


class ValidationResult(BaseModel):
    """Outcome of validating one user answer.

    Accepted results carry ``normalized_value``; rejected ones carry the
    ``message`` to show the user verbatim.
    """

    accepted: bool
    normalized_value: Optional[str] = None
    message: str = ""

    @classmethod
    def accept(cls, value: str) -> "ValidationResult":
        return cls(accepted=True, normalized_value=value)

    @classmethod
    def reject(cls, message: str) -> "ValidationResult":
        return cls(accepted=False, message=message)


class Oracle(ABC):
    """Abstract language oracle.

    Implementations may be slow and may fail; failures are raised as
    ``OracleUnavailableError`` and never returned as a result.
    """

    @abstractmethod
    async def classify_intent(self, text: str, state: Optional[str] = None) -> Intent:
        """Classify a message, given the current flow state (or None)."""

    @abstractmethod
    async def validate_field(self, kind: FieldKind, text: str) -> ValidationResult:
        """Validate and normalize one answer for a field kind."""

    @abstractmethod
    async def interpret_yes_no(self, text: str) -> YesNo:
        """Interpret a reply to a yes/no question."""

    @abstractmethod
    async def answer_question(self, text: str, knowledge: str) -> Optional[str]:
        """Answer a free-text question from the knowledge document.

        Returns None when no answer could be produced.
        """
