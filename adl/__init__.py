# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - PACKAGE
# =============================================================================
"""
Autonomous Development Loop

Orchestrates an AI coding agent through a repeating cycle:

1. Plan the next task from the repository's planning documents
2. Gate the agent's pull requests on CI and a written constitution
3. Learn from merged work and seed the next cycle

Package Structure:
    - main.py: Configuration, component wiring and CLI entry point
    - server.py: HTTP surface (aiohttp)
    - errors.py: Shared error taxonomy
    - engine/: Lifecycle state store and retry policy
    - github/: GitHub client, repository stager, inbound webhook events
    - services/: Heartbeat, Planner, Enforcer, Strategist, Troubleshooter

Environment Variables Required:
    - JULES_API_KEY: Task agent API key
    - GEMINI_API_KEY: LLM API key
    - GITHUB_TOKEN: GitHub API token
    - GITHUB_REPOSITORY: Target repository (owner/repo)
    - WEBHOOK_SECRET: Webhook signing secret

For detailed configuration, see config/adl.yaml
"""

__version__ = "1.0.0"
