# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - STRUCTURED LOGGING
# =============================================================================
"""
Structured Logging Module

Modules keep using ``logging.getLogger(__name__)``. ``setup_logging`` puts
a structlog ``ProcessorFormatter`` on the root handlers, so stdlib records
render as JSON (or console text) with a UTC timestamp, level, logger name
and whatever cycle context is bound at the time.

Cycle context:
    Each service cycle runs inside ``cycle_context("planner", ...)``. Every
    line logged during the cycle carries ``component``, a short
    ``cycle_id`` and the extra fields (pr_number, commit_sha, session_id).

Secret redaction:
    - values under credential-like keys are masked
    - GitHub tokens and ``x-access-token:<token>@`` clone URLs are scrubbed
      from every string field, including the message itself
"""

from __future__ import annotations

import logging
import logging.handlers
import re
import sys
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import structlog
from structlog.contextvars import bound_contextvars, merge_contextvars


# =============================================================================
# SECRET REDACTION
# =============================================================================

CREDENTIAL_KEYS = (
    "token", "api_key", "apikey", "secret", "password",
    "authorization", "credential", "signature",
)

_TOKEN_PATTERNS = [
    (re.compile(r"x-access-token:[^@\s]+@"), "x-access-token:****@"),
    (re.compile(r"\bgh[pousr]_[A-Za-z0-9]{16,}\b"), "gh*_****"),
    (re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}\b"), "github_pat_****"),
]


def is_credential_key(key: str) -> bool:
    normalized = key.lower().replace("-", "_")
    return any(marker in normalized for marker in CREDENTIAL_KEYS)


def scrub_text(text: str) -> str:
    """Replace token-shaped substrings in free text."""
    for pattern, replacement in _TOKEN_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _mask(value: Any) -> str:
    if isinstance(value, str) and len(value) > 8:
        return f"{value[:4]}****{value[-4:]}"
    return "****"


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: _mask(v) if is_credential_key(str(k)) and not isinstance(v, dict) else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_redact(v) for v in value]
    if isinstance(value, str):
        return scrub_text(value)
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Structlog processor applying credential masking to the whole event."""
    return _redact(event_dict)


def mask_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Redacted copy of an arbitrary dict, e.g. a configuration dump."""
    return _redact(data)


# =============================================================================
# LOGGING SETUP
# =============================================================================

NOISY_LOGGERS = ("urllib3", "aiohttp.access", "asyncio")


def _pre_chain(redact: bool) -> List[Any]:
    chain: List[Any] = [
        merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if redact:
        chain.append(redact_secrets)
    return chain


def _handler(handler: logging.Handler, renderer: Any, pre_chain: List[Any], level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    ))
    return handler


def setup_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_file: Optional[str] = None,
    redact: bool = True,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Route all logging through structlog renderers.

    Args:
        level: Root log level name
        fmt: ``"json"`` or ``"text"`` for the stdout handler
        log_file: Optional rotating file, always JSON at DEBUG
        redact: Apply secret redaction to every record
        max_bytes: Rotation size of the log file
        backup_count: Rotated files to keep

    Returns:
        The root logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    pre_chain = _pre_chain(redact)

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer = (
        structlog.processors.JSONRenderer() if fmt == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()
    root.addHandler(_handler(logging.StreamHandler(sys.stdout), renderer, pre_chain, numeric_level))

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8",
        )
        root.addHandler(_handler(rotating, structlog.processors.JSONRenderer(), pre_chain, logging.DEBUG))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


# =============================================================================
# CYCLE CONTEXT
# =============================================================================


@contextmanager
def cycle_context(component: str, **fields: Any) -> Iterator[str]:
    """
    Bind ``component``, a fresh ``cycle_id`` and ``fields`` to every log
    line emitted inside the block. Yields the cycle id.

    Usage::

        with cycle_context("enforcer", pr_number=12):
            logger.info("Auditing pull request")
    """
    cycle_id = uuid.uuid4().hex[:8]
    with bound_contextvars(component=component, cycle_id=cycle_id, **fields):
        yield cycle_id


__all__ = [
    "setup_logging",
    "cycle_context",
    "redact_secrets",
    "scrub_text",
    "mask_dict",
    "is_credential_key",
]
