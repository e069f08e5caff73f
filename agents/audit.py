# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - AUDIT RESULT PARSING
# =============================================================================
"""
Audit Result Parsing

The Enforcer asks the LLM for ``{"compliant": bool, "violations": [...]}``
but the answer is free text and not guaranteed to be valid JSON. Parsing
falls back through three tiers:

1. The first balanced ``{...}`` block that decodes as JSON and carries a
   ``compliant`` key.
2. A line scan: a "violations" heading followed by bulleted or numbered
   items, plus a "compliant" / "non-compliant" keyword for the verdict.
3. Neither yields any signal: AuditParseError.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional

from adl.errors import AuditParseError

logger = logging.getLogger(__name__)


@dataclass
class AuditResult:
    compliant: bool
    violations: List[str] = field(default_factory=list)

    def to_dict(self):
        return {"compliant": self.compliant, "violations": list(self.violations)}


# =============================================================================
# TIER 1: BALANCED JSON OBJECT
# =============================================================================

def iter_balanced_objects(text: str) -> Iterator[str]:
    """Yield each top-level balanced ``{...}`` span, ignoring braces in strings."""
    depth = 0
    start = None
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"' and depth > 0:
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start:i + 1]
                start = None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes")
    return bool(value)


def _parse_json_tier(text: str) -> Optional[AuditResult]:
    for candidate in iter_balanced_objects(text):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(data, dict) or "compliant" not in data:
            continue

        raw_violations = data.get("violations") or []
        if isinstance(raw_violations, str):
            raw_violations = [raw_violations]
        violations = [str(v) for v in raw_violations if str(v).strip()]
        return AuditResult(compliant=_as_bool(data["compliant"]), violations=violations)
    return None


# =============================================================================
# TIER 2: LINE SCAN
# =============================================================================

_VIOLATIONS_HEADING = re.compile(r"^[#*\s]*violations?[*\s]*:?[*\s]*$", re.IGNORECASE)
_LIST_ITEM = re.compile(r"^(?:[-*•]|\d+[.)])\s+(.+)$")
_NEGATIVE = re.compile(r"\b(?:non[- ]?compliant|not\s+compliant)\b|\bcompliant\W{0,6}(?:false|no)\b", re.IGNORECASE)
_POSITIVE = re.compile(r"\bcompliant\b", re.IGNORECASE)
_EMPTY_ITEMS = {"none", "n/a", "none.", "no violations", "no violations found"}


def _parse_line_tier(text: str) -> Optional[AuditResult]:
    compliant: Optional[bool] = None
    violations: List[str] = []
    in_violations = False

    for line in text.splitlines():
        stripped = line.strip()

        if _VIOLATIONS_HEADING.match(stripped):
            in_violations = True
            continue

        if in_violations:
            item = _LIST_ITEM.match(stripped)
            if item:
                value = item.group(1).strip().strip("*").strip()
                if value.lower() not in _EMPTY_ITEMS:
                    violations.append(value)
                continue
            if not stripped:
                continue
            in_violations = False

        if compliant is None:
            if _NEGATIVE.search(stripped):
                compliant = False
            elif _POSITIVE.search(stripped):
                compliant = True

    if compliant is None and not violations:
        return None
    if compliant is None:
        compliant = False
    return AuditResult(compliant=compliant and not violations, violations=violations)


# =============================================================================
# ENTRY POINT
# =============================================================================

def parse_audit_result(text: str) -> AuditResult:
    """
    Parse an audit answer.

    Raises:
        AuditParseError: If the text carries neither JSON nor textual signal
    """
    result = _parse_json_tier(text)
    if result is not None:
        return result

    logger.warning("Audit answer has no usable JSON object, falling back to line scan")
    result = _parse_line_tier(text)
    if result is not None:
        return result

    raise AuditParseError(f"Could not interpret audit answer: {text[:200]!r}")


__all__ = [
    "AuditResult",
    "parse_audit_result",
    "iter_balanced_objects",
]
