# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - TEST PACKAGE
# =============================================================================
"""
Test Package

Test Structure:
    tests/
    ├── __init__.py                # This file
    ├── conftest.py                # Shared fixtures (file-backed state, mocked clients)
    ├── helpers.py                 # Test doubles and response builders
    ├── test_retry.py              # Retry policy
    ├── test_state_manager.py      # Lifecycle state, CAS updates, leases
    ├── test_task_agent.py         # Session aggregation and Jules client
    ├── test_llm_client.py         # Gemini CLI invocation and quota fallback
    ├── test_audit.py              # Audit answer parsing tiers
    ├── test_github.py             # GitHub client, repository stager
    ├── test_webhook.py            # Inbound events, signatures, routing
    ├── test_planner.py            # Planner
    ├── test_enforcer.py           # CI gate, audit, review and merge
    ├── test_strategist.py         # Learning cycle and duplicate guards
    ├── test_heartbeat.py          # Controller dispatch and troubleshooter
    ├── test_notifier.py           # Agent notification recovery, escalation
    ├── test_server.py             # HTTP surface
    ├── test_config.py             # Configuration loading and validation
    └── test_monitoring.py         # Logging and metrics

Running Tests:
    pip install -e ".[test]"
    pytest tests/ -v
"""
