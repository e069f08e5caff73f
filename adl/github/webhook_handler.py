# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - WEBHOOK HANDLER
# =============================================================================
"""
GitHub Webhook Handler

Verifies, parses and routes webhook deliveries from the target repository.

Supported Events:
    - pull_request (opened, synchronize, reopened) -> Enforcer
    - push to the tracked branch                  -> Strategist
      (skipped when the commits are the Strategist's own document updates)
    - workflow_run (completed)                    -> Enforcer re-check of
      the pull requests the run belongs to
    - ping                                        -> acknowledged

Security:
    - HMAC-SHA256 of the raw body checked against X-Hub-Signature-256
      before anything is parsed
    - Unsigned deliveries are only accepted when explicitly allowed
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, TYPE_CHECKING

from adl.github.events import (
    EventParseError,
    InboundEvent,
    PingEvent,
    PullRequestEvent,
    PushEvent,
    WorkflowRunEvent,
    parse_event,
)
from adl.services.strategist import is_strategist_commit

if TYPE_CHECKING:
    from adl.services.enforcer import Enforcer
    from adl.services.strategist import Strategist


logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class WebhookError(Exception):
    """Base exception for webhook errors."""
    pass


class WebhookValidationError(WebhookError):
    """Raised when webhook signature validation fails."""
    pass


class WebhookParseError(WebhookError):
    """Raised when webhook payload cannot be parsed."""
    pass


# =============================================================================
# CONSTANTS
# =============================================================================

HEADER_EVENT = "X-GitHub-Event"
HEADER_SIGNATURE = "X-Hub-Signature-256"
HEADER_DELIVERY = "X-GitHub-Delivery"

PULL_REQUEST_ACTIONS = {"opened", "synchronize", "reopened"}
NULL_SHA = "0" * 40


def _get_header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return ""


def compute_signature(secret: str, body: bytes) -> str:
    """Signature header value GitHub would send for ``body``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


# =============================================================================
# WEBHOOK HANDLER CLASS
# =============================================================================


class WebhookHandler:
    """
    Handles incoming GitHub webhooks.

    Attributes:
        secret: Webhook secret for validation
        enforcer: Receives pull request and workflow run events
        strategist: Receives pushes to the tracked branch
        branch: The tracked branch
    """

    def __init__(
        self,
        secret: Optional[str],
        enforcer: "Enforcer",
        strategist: "Strategist",
        branch: str = "main",
        allow_unsigned: bool = False,
    ):
        self.secret = secret.encode("utf-8") if secret else b""
        self.enforcer = enforcer
        self.strategist = strategist
        self.branch = branch
        self.allow_unsigned = allow_unsigned

        if not self.secret and allow_unsigned:
            logger.warning("Webhook secret not set, accepting unsigned deliveries")

        self.stats = {
            "total_received": 0,
            "total_processed": 0,
            "total_ignored": 0,
            "total_errors": 0,
            "by_event": {},
            "last_received": None,
        }

    async def handle_webhook(self, headers: Mapping[str, str], body: bytes) -> Dict[str, Any]:
        """
        Verify, parse and dispatch one delivery.

        Returns:
            {"status": "processed" | "ignored" | "error", ...}

        Raises:
            WebhookValidationError: If the signature is invalid
            WebhookParseError: If the payload cannot be parsed
        """
        event = self.accept(headers, body)
        return await self.dispatch(event)

    def accept(self, headers: Mapping[str, str], body: bytes) -> InboundEvent:
        """Verify and parse a delivery without dispatching it."""
        self.stats["total_received"] += 1
        self.stats["last_received"] = datetime.now(timezone.utc).isoformat()

        if not self._validate_signature(headers, body):
            self.stats["total_errors"] += 1
            raise WebhookValidationError("Invalid webhook signature")

        event_name = _get_header(headers, HEADER_EVENT).lower()
        if not event_name:
            raise WebhookParseError("Missing X-GitHub-Event header")

        try:
            payload = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise WebhookParseError(f"Invalid JSON payload: {e}")
        if not isinstance(payload, dict):
            raise WebhookParseError("Payload must be a JSON object")

        try:
            event = parse_event(event_name, payload)
        except EventParseError as e:
            raise WebhookParseError(str(e))

        action = payload.get("action", "")
        event_key = f"{event_name}.{action}" if action else event_name
        self.stats["by_event"][event_key] = self.stats["by_event"].get(event_key, 0) + 1

        delivery_id = _get_header(headers, HEADER_DELIVERY) or "unknown"
        logger.info(f"Webhook received: {event_key} (delivery: {delivery_id})")
        return event

    def _validate_signature(self, headers: Mapping[str, str], body: bytes) -> bool:
        if not self.secret:
            return self.allow_unsigned

        signature_header = _get_header(headers, HEADER_SIGNATURE)
        if not signature_header:
            logger.warning("Missing webhook signature header")
            return False

        if not signature_header.startswith("sha256="):
            logger.warning("Invalid signature format (expected sha256=...)")
            return False

        computed = hmac.new(self.secret, body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(computed, signature_header[7:])

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def dispatch(self, event: InboundEvent) -> Dict[str, Any]:
        """Route a parsed event to its service."""
        try:
            if isinstance(event, PullRequestEvent):
                result = await self._on_pull_request(event)
            elif isinstance(event, PushEvent):
                result = await self._on_push(event)
            elif isinstance(event, WorkflowRunEvent):
                result = await self._on_workflow_run(event)
            elif isinstance(event, PingEvent):
                result = {"status": "processed", "result": {"pong": True, "zen": event.zen}}
            else:
                result = self._ignored(f"Unsupported event type: {event.name}")
        except Exception as e:
            self.stats["total_errors"] += 1
            logger.error(f"Error handling webhook: {e}", exc_info=True)
            return {"status": "error", "event": type(event).__name__, "error": str(e)}

        if result["status"] == "processed":
            self.stats["total_processed"] += 1
        return result

    def _ignored(self, reason: str) -> Dict[str, Any]:
        self.stats["total_ignored"] += 1
        logger.debug(f"Ignoring webhook: {reason}")
        return {"status": "ignored", "reason": reason}

    async def _on_pull_request(self, event: PullRequestEvent) -> Dict[str, Any]:
        if event.action not in PULL_REQUEST_ACTIONS:
            return self._ignored(f"pull_request action {event.action!r}")

        review = await self.enforcer.review_pull_request(event.number)
        return {"status": "processed", "event": "pull_request", "result": review.to_dict()}

    async def _on_push(self, event: PushEvent) -> Dict[str, Any]:
        if event.branch != self.branch:
            return self._ignored(f"push to {event.ref}")

        if event.after == NULL_SHA:
            return self._ignored("branch deletion")

        if any(is_strategist_commit(m) for m in event.commit_messages):
            return self._ignored("push contains the loop's own document updates")

        outcome = await self.strategist.run(event.after)
        return {"status": "processed", "event": "push", "result": outcome.to_dict()}

    async def _on_workflow_run(self, event: WorkflowRunEvent) -> Dict[str, Any]:
        if event.action != "completed":
            return self._ignored(f"workflow_run action {event.action!r}")

        if not event.pull_request_numbers:
            return self._ignored(f"workflow run {event.run_id} has no pull requests")

        reviews = []
        for number in event.pull_request_numbers:
            try:
                review = await self.enforcer.review_pull_request(number)
            except Exception as e:
                logger.error(f"Re-check of PR #{number} after run {event.run_id} failed: {e}")
                reviews.append({"pr_number": number, "outcome": "error", "error": str(e)})
                continue
            reviews.append(review.to_dict())
        return {"status": "processed", "event": "workflow_run", "result": reviews}

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================


def create_webhook_handler(
    config: Dict[str, Any],
    enforcer: "Enforcer",
    strategist: "Strategist",
    branch: str = "main",
) -> WebhookHandler:
    """
    Create a webhook handler from the ``server`` configuration section.

    Args:
        config: Section with ``webhook_secret`` and ``allow_unsigned_webhooks``
        enforcer: Enforcer instance
        strategist: Strategist instance
        branch: Tracked branch

    Returns:
        Configured WebhookHandler instance
    """
    return WebhookHandler(
        secret=config.get("webhook_secret"),
        enforcer=enforcer,
        strategist=strategist,
        branch=branch,
        allow_unsigned=bool(config.get("allow_unsigned_webhooks", False)),
    )


__all__ = [
    "WebhookHandler",
    "WebhookError",
    "WebhookValidationError",
    "WebhookParseError",
    "compute_signature",
    "create_webhook_handler",
    "HEADER_EVENT",
    "HEADER_SIGNATURE",
    "HEADER_DELIVERY",
]
