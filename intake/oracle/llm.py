"""LLMOracle — Oracle backed by Claude (Anthropic Messages API) or Ollama.

Structured answers are requested as JSON and pulled out of fenced or
bare JSON in the reply.  Validation also accepts the older plain-text
convention ``valid <value>`` so prompts tuned for it keep working.

Transport failures and HTTP errors raise ``OracleUnavailableError``;
the flow turns those into a retry message.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Optional

import httpx

from intake.errors import OracleUnavailableError
from intake.oracle.base import FieldKind, Intent, Oracle, ValidationResult, YesNo

log = logging.getLogger("intake.oracle")

ANTHROPIC_VERSION = "2023-06-01"

_INTENT_SYSTEM = (
    "You are the WhatsApp assistant of a school admissions office. Classify the "
    "user's message as AdmissionFlow (they want to apply, enrol, register, book an "
    "admission meeting, or they are giving admission details such as a name, email, "
    "grade or semester) or AskFAQ (a general question about the school). "
    'Respond with JSON only: {"intent": "AdmissionFlow"} or {"intent": "AskFAQ"}.'
)

_VALIDATE_SYSTEM = (
    "You are a data validation and formatting assistant. Convert valid inputs to "
    "their database-ready form. Respond with JSON only: "
    '{"valid": true, "value": "<normalized value>"} when the input is valid, or '
    '{"valid": false, "message": "<short, friendly explanation for the user>"} '
    "when it is not."
)

_FIELD_RULES: dict[FieldKind, str] = {
    FieldKind.name: (
        "Validate this as a full name for a school application. "
        "If valid, the value is the name exactly as provided."
    ),
    FieldKind.email: (
        "Validate this as an email address. If valid, the value is the email in lowercase."
    ),
    FieldKind.grade_level: (
        'Validate this as a grade level (1-12). Accept variations like "Grade 3", '
        '"3rd grade", "three" or "3". If valid, the value is the grade as a number.'
    ),
    FieldKind.semester: (
        'Validate this as a semester (1 or 2). Accept variations like "Semester 1", '
        '"1st semester", "one" or "two". If valid, the value is the semester as a number.'
    ),
    FieldKind.referral_source: (
        "Validate this as a referral source. Accept variations of Twitter, Facebook, "
        'Instagram, YouTube, Friend or Other. If valid, the value is the standardized '
        'source name (e.g. "from a friend" gives "Friend", "insta" gives "Instagram").'
    ),
}

_YES_NO_SYSTEM = (
    "Interpret the user's reply to a yes/no question. "
    'Respond with exactly one word: "yes", "no", or "unknown".'
)

_ANSWER_SYSTEM = (
    "You are a cheerful and knowledgeable assistant at the school. Answer the "
    "user's question in concise bullet points using only the School Info provided. "
    "If the School Info does not cover the question, say so briefly."
)

_PUNCT = re.compile(r"[^\w\s]|_")


def extract_json(text: str) -> dict | None:
    """Pull the first JSON object out of an LLM reply.

    Looks for a fenced code block first, then a bare JSON object on its
    own line, then the whole reply.
    """
    match = re.search(r"```(?:json)?\s*\n?({.*?})\s*\n?```", text, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            pass

    for line in text.split("\n"):
        line = line.strip()
        if line.startswith("{") and line.endswith("}"):
            try:
                return json.loads(line)
            except json.JSONDecodeError:
                continue

    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def parse_validation(reply: str) -> ValidationResult:
    """Turn a validation reply into a ValidationResult."""
    data = extract_json(reply)
    if data is not None and "valid" in data:
        if data.get("valid") is True and data.get("value") not in (None, ""):
            return ValidationResult.accept(str(data["value"]).strip())
        message = str(data.get("message") or "").strip()
        return ValidationResult.reject(message or "That doesn't look right. Please try again.")

    text = re.sub(r"```[\s\S]*?```", "", reply).strip()
    lowered = text.lower()
    if lowered.startswith("valid "):
        return ValidationResult.accept(text[6:].strip())
    return ValidationResult.reject(text or "That doesn't look right. Please try again.")


def parse_yes_no(text: str) -> YesNo | None:
    """Literal yes/no after stripping punctuation, else None."""
    normalized = _PUNCT.sub("", text).strip().lower()
    if normalized == "yes":
        return YesNo.yes
    if normalized == "no":
        return YesNo.no
    return None


class LLMOracle(Oracle):
    """Oracle implementation over the Anthropic or Ollama HTTP APIs.

    Usage::

        oracle = LLMOracle(provider="claude", api_key="sk-ant-...")
        intent = await oracle.classify_intent("I want to apply for grade 3")
    """

    def __init__(
        self,
        provider: str = "claude",
        *,
        api_key: str = "",
        model: str = "",
        base_url: str = "",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if provider not in ("claude", "ollama"):
            raise ValueError(f"Unknown LLM provider: {provider!r}")
        self._provider = provider
        self._api_key = api_key
        if provider == "claude":
            self._model = model or "claude-3-5-haiku-latest"
            self._base_url = (base_url or "https://api.anthropic.com/v1").rstrip("/")
        else:
            self._model = model or "qwen2.5:7b"
            self._base_url = (base_url or "http://localhost:11434").rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=8.0))
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings) -> "LLMOracle":
        if settings.llm_provider == "ollama":
            return cls(
                "ollama",
                model=settings.ollama_model,
                base_url=settings.ollama_url,
                timeout=settings.llm_timeout_seconds,
            )
        return cls(
            "claude",
            api_key=settings.anthropic_api_key,
            model=settings.anthropic_model,
            base_url=settings.anthropic_api_url,
            timeout=settings.llm_timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── Oracle contract ─────────────────────────────────────────

    async def classify_intent(self, text: str, state: Optional[str] = None) -> Intent:
        context = f"Current step: {state}" if state else "No conversation in progress."
        reply = await self._complete(
            _INTENT_SYSTEM, f'Message: "{text}"\n{context}', max_tokens=50
        )
        data = extract_json(reply) or {}
        try:
            intent = Intent(data.get("intent", Intent.unknown.value))
        except ValueError:
            intent = Intent.unknown
        log.info("Intent: %s (state=%s)", intent.value, state)
        return intent

    async def validate_field(self, kind: FieldKind, text: str) -> ValidationResult:
        rule = _FIELD_RULES[kind]
        reply = await self._complete(
            _VALIDATE_SYSTEM, f'{rule}\nInput: "{text}"', max_tokens=150
        )
        result = parse_validation(reply)
        log.info("Validation %s: accepted=%s", kind.value, result.accepted)
        return result

    async def interpret_yes_no(self, text: str) -> YesNo:
        literal = parse_yes_no(text)
        if literal is not None:
            return literal
        reply = await self._complete(_YES_NO_SYSTEM, f'Reply: "{text}"', max_tokens=5)
        return parse_yes_no(reply) or YesNo.unknown

    async def answer_question(self, text: str, knowledge: str) -> Optional[str]:
        reply = await self._complete(
            _ANSWER_SYSTEM,
            f"School Info:\n{knowledge}\n\nQuestion: \"{text}\"",
            max_tokens=600,
            temperature=0.5,
        )
        return reply.strip() or None

    # ── Transport ───────────────────────────────────────────────

    async def _complete(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 150,
        temperature: float = 0.0,
    ) -> str:
        try:
            if self._provider == "claude":
                text = await self._call_claude(system, user, max_tokens, temperature)
            else:
                text = await self._call_ollama(system, user, temperature)
        except httpx.HTTPError as e:
            log.error("LLM request failed (%s): %s", self._provider, e)
            raise OracleUnavailableError(str(e)) from e
        except (ValueError, KeyError, TypeError) as e:
            log.error("LLM returned an unreadable payload (%s): %s", self._provider, e)
            raise OracleUnavailableError(str(e)) from e
        return text

    async def _call_claude(
        self, system: str, user: str, max_tokens: int, temperature: float
    ) -> str:
        resp = await self._client.post(
            f"{self._base_url}/messages",
            headers={
                "x-api-key": self._api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            },
            json={
                "model": self._model,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "system": system,
                "messages": [{"role": "user", "content": user}],
            },
        )
        resp.raise_for_status()
        blocks = resp.json().get("content") or []
        return "".join(
            b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text"
        ).strip()

    async def _call_ollama(self, system: str, user: str, temperature: float) -> str:
        resp = await self._client.post(
            f"{self._base_url}/api/chat",
            json={
                "model": self._model,
                "stream": False,
                "options": {"temperature": temperature},
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            },
        )
        resp.raise_for_status()
        return str(resp.json().get("message", {}).get("content", "")).strip()
