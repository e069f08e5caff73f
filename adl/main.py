# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - MAIN ENTRY POINT
# =============================================================================
"""
Orchestrator Main Module

Entry point of the service. Loads configuration, wires every component
and serves the HTTP surface.

The service operates in two modes:
1. Webhook Mode: GitHub webhooks and external schedulers drive the loop
   through the HTTP endpoints
2. Polling Mode: additionally runs a Heartbeat tick every poll_interval
   seconds in-process

Usage:
    adl
    adl --config config/adl.yaml
    adl --mode polling --debug
    python -m adl.main
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from adl.engine.state_manager import StateManager
from adl.errors import ConfigurationError
from adl.github.client import GitHubClient, create_github_client
from adl.github.repo_stager import RepoStager
from adl.github.webhook_handler import create_webhook_handler
from adl.server import ADLServer, Services, create_server
from adl.services._base import ServiceContext
from adl.services.enforcer import Enforcer
from adl.services.heartbeat import Heartbeat
from adl.services.notifier import AgentNotifier, HumanNotifier
from adl.services.planner import Planner
from adl.services.strategist import Strategist
from adl.services.troubleshooter import Troubleshooter
from agents.llm_client import create_llm_client
from agents.task_agent import create_task_agent_client
from monitoring.logger import mask_dict, setup_logging
from monitoring.metrics import HealthCheck, MetricsCollector, create_metrics_collector

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

# Later entries win when several variables map to the same key
ENV_MAPPINGS: List[Tuple[str, Tuple[str, ...]]] = [
    # Task agent
    ("JULES_API_KEY", ("agent", "api_key")),
    ("JULES_API_URL", ("agent", "base_url")),
    # LLM
    ("GEMINI_API_KEY", ("llm", "api_key")),
    ("GEMINI_MODEL", ("llm", "model")),
    ("GEMINI_FALLBACK_MODEL", ("llm", "fallback_model")),
    ("GEMINI_CLI_PATH", ("llm", "cli_path")),
    ("LLM_TIMEOUT", ("llm", "timeout")),
    # GitHub
    ("GH_TOKEN", ("github", "token")),
    ("GITHUB_TOKEN", ("github", "token")),
    ("GITHUB_REPOSITORY", ("github", "repo")),
    ("GITHUB_BRANCH", ("github", "branch")),
    # State
    ("STATE_BACKEND", ("state", "backend")),
    ("STATE_PATH", ("state", "file", "path")),
    ("REDIS_URL", ("state", "redis", "url")),
    ("MAX_ITERATIONS", ("state", "max_iterations")),
    # Server
    ("WEBHOOK_SECRET", ("server", "webhook_secret")),
    ("ALLOW_UNSIGNED_WEBHOOKS", ("server", "allow_unsigned_webhooks")),
    ("HOST", ("server", "host")),
    ("PORT", ("server", "port")),
    # Orchestrator
    ("MODE", ("orchestrator", "mode")),
    ("POLL_INTERVAL", ("orchestrator", "poll_interval")),
    ("PUBSUB_PROJECT_ID", ("orchestrator", "pubsub_project_id")),
    # Logging
    ("LOG_LEVEL", ("logging", "level")),
    ("LOG_FORMAT", ("logging", "format")),
]

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "github": {
        "token": "",
        "repo": "",
        "branch": "main",
    },
    "agent": {
        "api_key": "",
        "base_url": "https://jules.googleapis.com/v1alpha",
    },
    "llm": {
        "api_key": "",
        "model": "gemini-2.5-pro",
        "fallback_model": "gemini-2.5-flash",
        "cli_path": "gemini",
        "timeout": 600,
    },
    "state": {
        "backend": "file",
        "file": {"path": "state/.adl-state.json"},
        "max_iterations": 10,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8080,
        "webhook_secret": "",
        "allow_unsigned_webhooks": False,
        "background_dispatch": True,
    },
    "orchestrator": {
        "mode": "webhook",
        "poll_interval": 300,
        "lease_seconds": 1800,
    },
    "logging": {
        "level": "INFO",
        "format": "json",
    },
}

VALID_MODES = ("webhook", "polling")
VALID_BACKENDS = ("file", "redis")


def _as_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "on", "1"):
        return True
    if lowered in ("false", "no", "off", "0"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


# Every other variable stays a string
ENV_TYPES: Dict[str, Callable[[str], Any]] = {
    "LLM_TIMEOUT": int,
    "MAX_ITERATIONS": int,
    "PORT": int,
    "POLL_INTERVAL": int,
    "ALLOW_UNSIGNED_WEBHOOKS": _as_bool,
}


def _coerce(env_var: str, value: str) -> Any:
    convert = ENV_TYPES.get(env_var)
    if convert is None:
        return value
    try:
        return convert(value.strip())
    except ValueError:
        raise ConfigurationError(f"Invalid value for {env_var}: {value!r}")


def _set_path(config: Dict[str, Any], path: Tuple[str, ...], value: Any) -> None:
    node = config
    for key in path[:-1]:
        if not isinstance(node.get(key), dict):
            node[key] = {}
        node = node[key]
    node[path[-1]] = value


def _fill_defaults(config: Dict[str, Any], defaults: Dict[str, Any]) -> None:
    for key, default_value in defaults.items():
        if isinstance(default_value, dict):
            if not isinstance(config.get(key), dict):
                config[key] = {}
            _fill_defaults(config[key], default_value)
        elif key not in config:
            config[key] = default_value


def load_config(config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML file and environment variables.

    Environment variables override YAML values; defaults fill the rest.

    Args:
        config_path: Path to adl.yaml (optional)
        environ: Environment to read, defaults to ``os.environ``

    Returns:
        Merged configuration dictionary

    Raises:
        ConfigurationError: If a numeric or boolean variable does not parse
    """
    environ = os.environ if environ is None else environ
    config: Dict[str, Any] = {}

    if config_path:
        config_file = Path(config_path)
        if config_file.exists():
            with open(config_file) as f:
                config = yaml.safe_load(f) or {}
            logger.info(f"Loaded config from {config_path}")
        else:
            logger.warning(f"Config file not found: {config_path}, using defaults")

    for env_var, path in ENV_MAPPINGS:
        value = environ.get(env_var)
        if value is not None and value != "":
            _set_path(config, path, _coerce(env_var, value))

    _fill_defaults(config, DEFAULTS)
    return config


def validate_config(config: Dict[str, Any]) -> None:
    """
    Check that every required setting is present.

    Raises:
        ConfigurationError: Naming every missing or invalid setting
    """
    missing = []
    invalid = []

    required = [
        (("agent", "api_key"), "JULES_API_KEY"),
        (("llm", "api_key"), "GEMINI_API_KEY"),
        (("github", "token"), "GITHUB_TOKEN"),
        (("github", "repo"), "GITHUB_REPOSITORY"),
    ]
    for (section, key), env_var in required:
        if not config.get(section, {}).get(key):
            missing.append(env_var)

    repo = config["github"].get("repo")
    if repo and "/" not in str(repo):
        invalid.append(f"GITHUB_REPOSITORY must be owner/repo, got {repo!r}")

    state = config["state"]
    if state.get("backend") not in VALID_BACKENDS:
        invalid.append(f"STATE_BACKEND must be one of {VALID_BACKENDS}, got {state.get('backend')!r}")
    elif state["backend"] == "file" and not state.get("file", {}).get("path"):
        missing.append("STATE_PATH")
    elif state["backend"] == "redis" and not state.get("redis", {}).get("url"):
        missing.append("REDIS_URL")

    server = config["server"]
    if not server.get("webhook_secret") and not server.get("allow_unsigned_webhooks"):
        missing.append("WEBHOOK_SECRET")

    mode = config["orchestrator"].get("mode")
    if mode not in VALID_MODES:
        invalid.append(f"MODE must be one of {VALID_MODES}, got {mode!r}")

    if missing or invalid:
        problems = []
        if missing:
            problems.append(f"missing settings: {', '.join(missing)}")
        problems.extend(invalid)
        raise ConfigurationError("Invalid configuration: " + "; ".join(problems), missing=missing)


# =============================================================================
# ORCHESTRATOR CLASS
# =============================================================================


class Orchestrator:
    """
    Wires the loop's components and runs the service.

    This class is responsible for:
    1. Initializing clients, state store and services
    2. Serving the HTTP surface
    3. Running the in-process heartbeat in polling mode
    4. Releasing resources on shutdown
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in setup())
        self.metrics: Optional[MetricsCollector] = None
        self.github_client: Optional[GitHubClient] = None
        self.state_manager: Optional[StateManager] = None
        self.services: Optional[Services] = None
        self.server: Optional[ADLServer] = None

    async def setup(self) -> None:
        """
        Initialize all components.

        This must be called before run().
        """
        logger.info("Initializing components...")
        config = self.config
        orchestrator_config = config["orchestrator"]

        self.metrics = create_metrics_collector({"mode": orchestrator_config["mode"]})

        self.github_client = create_github_client(config["github"])
        task_agent = create_task_agent_client(config["agent"])
        llm_client = create_llm_client(config["llm"], metrics=self.metrics)
        logger.info("External clients initialized")

        state_config = dict(config["state"])
        state_config.setdefault("project_id", orchestrator_config.get("pubsub_project_id") or "default")
        self.state_manager = await StateManager.create(state_config)
        logger.info(f"State manager initialized ({state_config['backend']} backend)")

        ctx = ServiceContext(
            github_client=self.github_client,
            task_agent=task_agent,
            llm_client=llm_client,
            state_manager=self.state_manager,
            repo_stager=RepoStager(token=self.github_client.token),
            metrics=self.metrics,
            config={**orchestrator_config, "branch": config["github"]["branch"]},
        )

        agent_notifier = AgentNotifier(task_agent, self.state_manager)
        human_notifier = HumanNotifier(self.github_client)

        planner = Planner(ctx)
        troubleshooter = Troubleshooter(ctx)
        strategist = Strategist(
            ctx,
            planner,
            human_notifier,
            lease_seconds=int(orchestrator_config["lease_seconds"]),
        )
        enforcer = Enforcer(ctx, agent_notifier, strategist=strategist)
        heartbeat = Heartbeat(ctx, planner, troubleshooter, human_notifier)

        webhook_handler = create_webhook_handler(
            config["server"], enforcer, strategist, branch=ctx.branch
        )

        self.services = Services(
            heartbeat=heartbeat,
            planner=planner,
            enforcer=enforcer,
            troubleshooter=troubleshooter,
            state_manager=self.state_manager,
            webhook_handler=webhook_handler,
        )

        health = HealthCheck()
        health.register("state", self.state_manager.health_check)
        self.server = create_server(self.services, config["server"], self.metrics, health)

        logger.info("All components initialized successfully")

    async def run(self) -> None:
        """
        Serve until stop() is called.

        In polling mode a Heartbeat tick runs every poll_interval seconds.
        """
        self._running = True
        mode = self.config["orchestrator"]["mode"]
        poll_interval = float(self.config["orchestrator"]["poll_interval"])

        logger.info(f"Starting orchestrator in {mode} mode")
        await self.server.start()

        try:
            while self._running:
                if mode == "polling":
                    await self._tick()

                # Wait for next poll or shutdown
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=poll_interval)
                    break
                except asyncio.TimeoutError:
                    continue
        finally:
            await self._cleanup()

        logger.info("Orchestrator stopped")

    async def _tick(self) -> None:
        try:
            result = await self.services.heartbeat.run()
            logger.info(f"Heartbeat tick finished: {result.state.value}")
        except Exception as e:
            logger.error(f"Heartbeat tick failed: {e}", exc_info=True)

    async def stop(self) -> None:
        """Gracefully stop the orchestrator."""
        logger.info("Stopping orchestrator...")
        self._running = False
        self._shutdown_event.set()

    async def _cleanup(self) -> None:
        logger.info("Cleaning up resources...")

        try:
            if self.server:
                await self.server.stop()
        except Exception as e:
            logger.warning(f"Server cleanup failed: {e}")

        try:
            if self.state_manager:
                await self.state_manager.close()
        except Exception as e:
            logger.warning(f"State manager cleanup failed: {e}")

        if self.github_client:
            self.github_client.close()

        logger.info("Cleanup complete")


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Autonomous Development Loop - Orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--config",
        default="config/adl.yaml",
        help="Path to configuration file (default: config/adl.yaml)",
    )
    parser.add_argument(
        "--mode",
        choices=VALID_MODES,
        help="Override orchestrator mode",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    return parser.parse_args(argv)


# =============================================================================
# SIGNAL HANDLING
# =============================================================================


def setup_signal_handlers(orchestrator: Orchestrator, loop: asyncio.AbstractEventLoop) -> None:
    """Setup signal handlers for graceful shutdown."""

    def signal_handler(sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, initiating shutdown...")
        loop.create_task(orchestrator.stop())

    # Only set signal handlers if running on Unix-like systems
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler, sig)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


async def async_main(config: Dict[str, Any]) -> None:
    orchestrator = Orchestrator(config)
    setup_signal_handlers(orchestrator, asyncio.get_running_loop())

    try:
        await orchestrator.setup()
        await orchestrator.run()
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        await orchestrator.stop()
        raise


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
    if args.mode:
        config["orchestrator"]["mode"] = args.mode

    log_config = config["logging"]
    setup_logging(
        level="DEBUG" if args.debug else str(log_config["level"]).upper(),
        fmt=log_config["format"],
        log_file=log_config.get("file"),
    )

    logger.info("=" * 60)
    logger.info("Autonomous Development Loop - Orchestrator")
    logger.info("=" * 60)

    try:
        validate_config(config)
    except ConfigurationError as e:
        logger.critical(str(e))
        sys.exit(2)

    logger.debug(f"Effective configuration: {mask_dict(config)}")

    try:
        asyncio.run(async_main(config))
    except KeyboardInterrupt:
        logger.info("Orchestrator stopped by user")
    except Exception as e:
        logger.critical(f"Orchestrator failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
