"""Static knowledge document used to answer general questions."""

from __future__ import annotations

import logging
from pathlib import Path

log = logging.getLogger("intake.knowledge")


def load_knowledge(path: str | Path) -> str:
    """Read the knowledge document once.

    A missing or unreadable file is logged and yields an empty document,
    so the service still starts and questions get the no-answer reply.
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        log.warning("Knowledge document not found: %s", p)
        return ""
    except OSError as e:
        log.error("Failed to read knowledge document %s: %s", p, e)
        return ""
    log.info("Loaded knowledge document %s (%d chars)", p, len(text))
    return text
