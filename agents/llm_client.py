# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - LLM CLIENT
# =============================================================================
"""
LLM Client Module

Resilient wrapper around the Gemini CLI. Each call spawns the tool once,
writes the prompt to its stdin and requires JSON on stdout:

    success: {"response": "<text>"}
    failure: {"error": {"type": "...", "message": "...", "code": 429}}

Failure handling:
    - Error payload            -> ModelError("<message> (<type>)")
    - Unparseable stdout       -> InvocationError("Failed to parse Gemini CLI JSON output")
    - Non-zero exit, no payload -> InvocationError("Stderr: <stderr>")

When the payload or stderr looks like a quota / capacity / 429 condition
the error is a QuotaExceededError, and the first such failure is retried
exactly once against the fallback model. Nothing else is retried here.

Usage:
    client = GeminiCLIClient(api_key="...", model="gemini-2.5-pro")
    text = await client.generate(prompt, working_dir=staged_path)
"""

import asyncio
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from adl.engine.retry import RetryPolicy
from adl.errors import InvocationError, ModelError, QuotaExceededError

if TYPE_CHECKING:
    from monitoring.metrics import MetricsCollector


logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

QUOTA_MARKERS = ("quota", "capacity", "resource_exhausted", "rate limit")
QUOTA_STATUS = re.compile(r"\b429\b")

DEFAULT_MODEL = "gemini-2.5-pro"
DEFAULT_FALLBACK_MODEL = "gemini-2.5-flash"


@dataclass
class LLMResponse:
    """
    Result of one successful generate call.

    Attributes:
        content: Generated text
        model: Model that produced it
        attempts: Number of CLI invocations made
        duration: Wall time across attempts, in seconds
    """
    content: str
    model: str
    attempts: int = 1
    duration: float = 0.0

    @property
    def used_fallback(self) -> bool:
        return self.attempts > 1


def is_quota_error(*texts: Optional[str], code: Any = None) -> bool:
    """True if an error code or any of the texts signals exhausted quota."""
    if str(code) == "429":
        return True
    for text in texts:
        if not text:
            continue
        if any(marker in text.lower() for marker in QUOTA_MARKERS) or QUOTA_STATUS.search(text):
            return True
    return False


def _decode_payload(stdout: str) -> Optional[Dict[str, Any]]:
    """Decode the CLI's JSON output, tolerating log lines before it."""
    text = stdout.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        if start <= 0:
            return None
        try:
            payload = json.loads(text[start:])
        except json.JSONDecodeError:
            return None
    return payload if isinstance(payload, dict) else None


# =============================================================================
# GEMINI CLI CLIENT
# =============================================================================

class GeminiCLIClient:
    """
    Gemini CLI invoker with one-shot quota fallback.

    Attributes:
        cli_path: Executable to spawn
        model: Primary model
        fallback_model: Model used once after a quota failure
        timeout: Seconds allowed for one CLI invocation
    """

    DEFAULT_TIMEOUT = 600

    def __init__(
        self,
        api_key: str = None,
        model: str = None,
        fallback_model: str = None,
        cli_path: str = None,
        timeout: float = None,
        extra_args: Optional[List[str]] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY")
        self.model = model or DEFAULT_MODEL
        self.fallback_model = fallback_model if fallback_model is not None else DEFAULT_FALLBACK_MODEL
        self.cli_path = cli_path or "gemini"
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.extra_args = list(extra_args or [])
        self.metrics = metrics

        if not self.api_key:
            raise ValueError(
                "Gemini API key required. Set GEMINI_API_KEY environment variable "
                "or pass api_key parameter."
            )

        self._call_count = 0
        self._fallback_count = 0

    def build_command(self, model: str) -> List[str]:
        return [
            self.cli_path,
            "--output-format", "json",
            "--yolo",
            "--model", model,
            *self.extra_args,
        ]

    async def generate(
        self,
        prompt: str,
        model: str = None,
        fallback_model: str = None,
        working_dir: str = None,
    ) -> str:
        """
        Generate text for a prompt.

        Args:
            prompt: Prompt written to the CLI's stdin
            model: Override the primary model
            fallback_model: Override the fallback model
            working_dir: Directory the CLI runs in (e.g. a staged repository)

        Returns:
            The model's response text

        Raises:
            QuotaExceededError: If the fallback attempt also hit quota
            ModelError: If the tool reported an error payload
            InvocationError: If the process failed or printed garbage
        """
        response = await self.generate_response(prompt, model, fallback_model, working_dir)
        return response.content

    async def generate_response(
        self,
        prompt: str,
        model: str = None,
        fallback_model: str = None,
        working_dir: str = None,
    ) -> LLMResponse:
        primary = model or self.model
        fallback = fallback_model or self.fallback_model
        models = [primary]
        if fallback and fallback != primary:
            models.append(fallback)

        policy = RetryPolicy(
            max_attempts=len(models),
            base_delay=0,
            retry_on=(QuotaExceededError,),
            name="Gemini CLI call",
        )

        start = time.monotonic()
        used = {"attempts": 0}

        async def _attempt(attempt: int) -> str:
            used["attempts"] = attempt + 1
            return await self._invoke(prompt, models[attempt], working_dir)

        def _on_retry(error: BaseException, next_attempt: int) -> None:
            self._fallback_count += 1
            if self.metrics:
                self.metrics.record_llm_fallback()
            logger.warning(
                f"Quota exhausted on {models[next_attempt - 1]}, "
                f"retrying once with {models[next_attempt]}"
            )

        content = await policy.execute(_attempt, on_retry=_on_retry)
        return LLMResponse(
            content=content,
            model=models[used["attempts"] - 1],
            attempts=used["attempts"],
            duration=time.monotonic() - start,
        )

    async def _invoke(self, prompt: str, model: str, working_dir: Optional[str]) -> str:
        """Run the CLI once and interpret its output."""
        self._call_count += 1
        start = time.monotonic()
        outcome = "error"

        try:
            result = await self._run_process(prompt, model, working_dir)
            outcome = "success"
            return result
        except QuotaExceededError:
            outcome = "quota"
            raise
        finally:
            if self.metrics:
                self.metrics.record_llm_call(model, outcome, time.monotonic() - start)

    async def _run_process(self, prompt: str, model: str, working_dir: Optional[str]) -> str:
        cmd = self.build_command(model)
        logger.debug(f"Invoking Gemini CLI with model {model}")

        env = {**os.environ, "GEMINI_API_KEY": self.api_key}
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=working_dir,
                env=env,
            )
        except OSError as e:
            raise InvocationError(f"Failed to spawn {self.cli_path}: {e}")

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(prompt.encode("utf-8")),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise InvocationError(f"Gemini CLI timed out after {self.timeout}s")

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        payload = _decode_payload(stdout)

        if payload and isinstance(payload.get("error"), dict):
            error = payload["error"]
            error_type = str(error.get("type", "Error"))
            message = f"{error.get('message', 'Unknown error')} ({error_type})"
            code = error.get("code")
            if is_quota_error(message, stderr, code=code):
                raise QuotaExceededError(message, error_type=error_type, code=code)
            raise ModelError(message, error_type=error_type, code=code)

        if process.returncode != 0:
            message = f"Stderr: {stderr}"
            if is_quota_error(stderr):
                raise QuotaExceededError(message, error_type="quota")
            raise InvocationError(message, exit_code=process.returncode, stderr=stderr)

        if payload is None:
            raise InvocationError(
                "Failed to parse Gemini CLI JSON output",
                exit_code=process.returncode,
                stderr=stderr,
            )

        response = payload.get("response")
        if not isinstance(response, str):
            raise InvocationError("Gemini CLI JSON output has no response text")

        return response

    def get_metrics(self) -> Dict[str, Any]:
        """Get accumulated call counts."""
        return {
            "call_count": self._call_count,
            "fallback_count": self._fallback_count,
            "model": self.model,
            "fallback_model": self.fallback_model,
        }


def create_llm_client(config: Dict[str, Any], metrics: Optional["MetricsCollector"] = None) -> GeminiCLIClient:
    """Create a client from the ``llm`` configuration section."""
    return GeminiCLIClient(
        api_key=config.get("api_key"),
        model=config.get("model"),
        fallback_model=config.get("fallback_model"),
        cli_path=config.get("cli_path"),
        timeout=config.get("timeout"),
        extra_args=config.get("extra_args"),
        metrics=metrics,
    )


__all__ = [
    "GeminiCLIClient",
    "LLMResponse",
    "is_quota_error",
    "create_llm_client",
    "QUOTA_MARKERS",
    "DEFAULT_MODEL",
    "DEFAULT_FALLBACK_MODEL",
]
