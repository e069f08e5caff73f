# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - HTTP SERVER
# =============================================================================
"""
HTTP Surface

aiohttp application exposing the loop's entry points. Every request is an
independent, short-lived cycle.

Endpoints:
    GET  /health                   Component health (503 when unhealthy)
    GET  /metrics                  Prometheus text format
    GET  /stats                    Webhook statistics
    GET  /state                    Current lifecycle state
    POST /run                      Manual trigger
                                     {"prNumber": n}            -> Enforcer
                                     {"sessionId", "question"}  -> Troubleshooter
                                     otherwise                  -> Heartbeat
    POST /webhook                  GitHub webhook delivery
    POST /heartbeat                One Heartbeat tick
    POST /trigger/planner          One Planner cycle
    POST /trigger/troubleshooter   {"sessionId", "question"} or a Pub/Sub
                                   push envelope carrying the same JSON
    POST /loop/start               Restart the loop
    POST /loop/stop                Stop the loop
    POST /debug/reset-state        Reset state to defaults, then plan
    POST /debug/force-pr-review    Review the latest open pull request

Error mapping:
    bad request body / configuration  -> 400
    webhook signature failure         -> 401
    anything else uncaught            -> 500 {"success": false, "error": ...}
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from aiohttp import web

from adl.errors import ADLError, ConfigurationError, ExternalServiceError
from adl.github.webhook_handler import (
    WebhookHandler,
    WebhookParseError,
    WebhookValidationError,
)
from adl.services.heartbeat import FALLBACK_QUESTION, Heartbeat
from adl.services.enforcer import Enforcer
from adl.services.planner import Planner
from adl.services.troubleshooter import Troubleshooter
from adl.engine.state_manager import StateManager
from monitoring.metrics import HealthCheck, MetricsCollector

logger = logging.getLogger(__name__)


class RequestError(ADLError):
    """Raised when a request body is malformed or incomplete."""
    pass


@dataclass
class Services:
    """The wired services an HTTP server dispatches to."""
    heartbeat: Heartbeat
    planner: Planner
    enforcer: Enforcer
    troubleshooter: Troubleshooter
    state_manager: StateManager
    webhook_handler: WebhookHandler


# =============================================================================
# MIDDLEWARE
# =============================================================================


def _error_middleware(metrics: Optional[MetricsCollector]):
    @web.middleware
    async def middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except (RequestError, ConfigurationError) as e:
            logger.warning(f"Bad request to {request.path}: {e}")
            return web.json_response({"success": False, "error": str(e)}, status=400)
        except Exception as e:
            if metrics is not None and isinstance(e, ExternalServiceError):
                metrics.record_external_error(e.service)
            logger.error(f"Error handling {request.method} {request.path}: {e}", exc_info=True)
            return web.json_response({"success": False, "error": str(e)}, status=500)

    return middleware


async def _json_body(request: web.Request) -> Dict[str, Any]:
    """Request body as a JSON object; an empty body is an empty object."""
    raw = await request.read()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise RequestError(f"Invalid JSON body: {e}")
    if not isinstance(body, dict):
        raise RequestError("Request body must be a JSON object")
    return body


def decode_pubsub_envelope(body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Unwrap a Pub/Sub push envelope ``{"message": {"data": base64(json)}}``.

    Bodies without an envelope are returned unchanged.
    """
    message = body.get("message")
    if not isinstance(message, dict) or "data" not in message:
        return body
    try:
        decoded = json.loads(base64.b64decode(message["data"]).decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        raise RequestError(f"Invalid Pub/Sub message data: {e}")
    if not isinstance(decoded, dict):
        raise RequestError("Pub/Sub message data must be a JSON object")
    return decoded


# =============================================================================
# SERVER
# =============================================================================


class ADLServer:
    """
    HTTP server for the loop.

    Attributes:
        services: Wired services
        host: Host to bind to
        port: Port to listen on
        background_dispatch: Acknowledge verified webhooks with 202 and
            dispatch them in a background task
    """

    def __init__(
        self,
        services: Services,
        metrics: Optional[MetricsCollector] = None,
        health: Optional[HealthCheck] = None,
        host: str = "0.0.0.0",
        port: int = 8080,
        background_dispatch: bool = True,
    ):
        self.services = services
        self.metrics = metrics
        self.health = health or HealthCheck()
        self.host = host
        self.port = port
        self.background_dispatch = background_dispatch

        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._tasks: Set[asyncio.Task] = set()

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[_error_middleware(self.metrics)])
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/stats", self._handle_stats)
        app.router.add_get("/state", self._handle_state)
        app.router.add_post("/run", self._handle_run)
        app.router.add_post("/webhook", self._handle_webhook)
        app.router.add_post("/heartbeat", self._handle_heartbeat)
        app.router.add_post("/trigger/planner", self._handle_planner)
        app.router.add_post("/trigger/troubleshooter", self._handle_troubleshooter)
        app.router.add_post("/loop/start", self._handle_loop_start)
        app.router.add_post("/loop/stop", self._handle_loop_stop)
        app.router.add_post("/debug/reset-state", self._handle_reset_state)
        app.router.add_post("/debug/force-pr-review", self._handle_force_review)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def start(self) -> None:
        if self._runner is not None:
            logger.warning("Server already running")
            return

        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        logger.info(f"Server started on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner is None:
            return

        logger.info("Stopping server...")
        await self._runner.cleanup()
        self._runner = None
        self._site = None
        logger.info("Server stopped")

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def _on_shutdown(self, app: web.Application) -> None:
        del app
        await self.drain()

    async def drain(self) -> None:
        """Wait for background webhook dispatches to finish."""
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} background dispatch(es)")
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # =========================================================================
    # OBSERVABILITY
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        del request
        result = await self.health.check_all()
        result["status"] = "healthy" if result["healthy"] else "unhealthy"
        return web.json_response(result, status=200 if result["healthy"] else 503)

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        del request
        if self.metrics is None:
            raise web.HTTPNotFound(text="metrics disabled")
        body, content_type = self.metrics.render()
        return web.Response(body=body, headers={"Content-Type": content_type})

    async def _handle_stats(self, request: web.Request) -> web.Response:
        del request
        return web.json_response({
            "status": "ok",
            "stats": self.services.webhook_handler.get_stats(),
            "background_tasks": len(self._tasks),
        })

    async def _handle_state(self, request: web.Request) -> web.Response:
        del request
        state = await self.services.state_manager.read()
        return web.json_response({"success": True, "state": state.to_dict()})

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    async def _handle_run(self, request: web.Request) -> web.Response:
        body = await _json_body(request)

        if body.get("prNumber") is not None:
            try:
                pr_number = int(body["prNumber"])
            except (TypeError, ValueError):
                raise RequestError(f"Invalid prNumber: {body['prNumber']!r}")
            result = await self.services.enforcer.review_pull_request(pr_number)
            return self._ok("enforcer", result.to_dict())

        if body.get("sessionId"):
            question = body.get("question") or FALLBACK_QUESTION
            result = await self.services.troubleshooter.run(str(body["sessionId"]), question)
            return self._ok("troubleshooter", result.to_dict())

        result = await self.services.heartbeat.run()
        return self._ok("heartbeat", result.to_dict())

    async def _handle_heartbeat(self, request: web.Request) -> web.Response:
        del request
        result = await self.services.heartbeat.run()
        return self._ok("heartbeat", result.to_dict())

    async def _handle_planner(self, request: web.Request) -> web.Response:
        del request
        result = await self.services.planner.run()
        return self._ok("planner", result.to_dict())

    async def _handle_troubleshooter(self, request: web.Request) -> web.Response:
        body = decode_pubsub_envelope(await _json_body(request))
        session_id = body.get("sessionId")
        if not session_id:
            raise RequestError("sessionId is required")

        question = body.get("question") or FALLBACK_QUESTION
        result = await self.services.troubleshooter.run(str(session_id), question)
        return self._ok("troubleshooter", result.to_dict())

    async def _handle_loop_start(self, request: web.Request) -> web.Response:
        del request
        state = await self.services.state_manager.start_loop()
        logger.info("Loop started via HTTP")
        return web.json_response({"success": True, "state": state.to_dict()})

    async def _handle_loop_stop(self, request: web.Request) -> web.Response:
        del request
        state = await self.services.state_manager.stop_loop()
        logger.info("Loop stopped via HTTP")
        return web.json_response({"success": True, "state": state.to_dict()})

    async def _handle_reset_state(self, request: web.Request) -> web.Response:
        del request
        state = await self.services.state_manager.reset()
        logger.warning("State reset via debug endpoint")
        plan = await self.services.planner.run()
        return web.json_response({
            "success": True,
            "state": state.to_dict(),
            "plan": plan.to_dict(),
        })

    async def _handle_force_review(self, request: web.Request) -> web.Response:
        del request
        result = await self.services.enforcer.review_latest_open_pull()
        if result is None:
            return web.json_response({"success": True, "result": None, "message": "No open pull requests"})
        return self._ok("enforcer", result.to_dict())

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        body = await request.read()
        handler = self.services.webhook_handler

        try:
            event = handler.accept(request.headers, body)
        except WebhookValidationError as e:
            logger.warning(f"Webhook validation failed: {e}")
            return web.json_response(
                {"success": False, "status": "error", "error": "Invalid signature"},
                status=401,
            )
        except WebhookParseError as e:
            logger.warning(f"Webhook parse error: {e}")
            return web.json_response(
                {"success": False, "status": "error", "error": str(e)},
                status=400,
            )

        if self.background_dispatch:
            task = asyncio.create_task(self._dispatch_in_background(event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return web.json_response(
                {"success": True, "status": "accepted", "event": type(event).__name__},
                status=202,
            )

        result = await handler.dispatch(event)
        if result.get("status") == "error":
            return web.json_response({"success": False, **result}, status=500)
        return web.json_response({"success": True, **result})

    async def _dispatch_in_background(self, event: Any) -> None:
        result = await self.services.webhook_handler.dispatch(event)
        logger.info(f"Background dispatch of {type(event).__name__} finished: {result.get('status')}")

    @staticmethod
    def _ok(service: str, result: Dict[str, Any]) -> web.Response:
        return web.json_response({
            "success": True,
            "service": service,
            "result": result,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })


# =============================================================================
# FACTORY
# =============================================================================


def create_server(
    services: Services,
    config: Dict[str, Any],
    metrics: Optional[MetricsCollector] = None,
    health: Optional[HealthCheck] = None,
) -> ADLServer:
    """Create the HTTP server from the ``server`` configuration section."""
    return ADLServer(
        services=services,
        metrics=metrics,
        health=health,
        host=config.get("host", "0.0.0.0"),
        port=int(config.get("port", 8080)),
        background_dispatch=bool(config.get("background_dispatch", True)),
    )


__all__ = [
    "ADLServer",
    "Services",
    "RequestError",
    "decode_pubsub_envelope",
    "create_server",
]
