# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - AGENTS PACKAGE
# =============================================================================
"""
Agents Package

Clients for the two agent-like services the loop orchestrates. The loop
never plans or writes code itself; it calls these and reacts to what they
report.

Package Structure:
    agents/
    ├── __init__.py          # This file
    ├── task_agent.py        # Jules sessions: list, create, message, aggregate
    ├── llm_client.py        # Gemini CLI invoker with quota fallback
    ├── audit.py             # Constitution audit result parsing
    └── prompts.py           # Prompt templates

Usage:
    from agents import TaskAgentClient, GeminiCLIClient

    agent = TaskAgentClient(api_key="...")
    status = agent.get_aggregate_status()
"""

from agents.audit import AuditResult, parse_audit_result
from agents.llm_client import GeminiCLIClient, LLMResponse
from agents.task_agent import AggregateKind, AggregateStatus, SessionState, TaskAgentClient

__version__ = "1.0.0"

__all__ = [
    "AuditResult",
    "parse_audit_result",
    "GeminiCLIClient",
    "LLMResponse",
    "AggregateKind",
    "AggregateStatus",
    "SessionState",
    "TaskAgentClient",
]
