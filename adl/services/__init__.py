# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - SERVICES PACKAGE
# =============================================================================
"""
Services Package

Each service runs one short-lived cycle per call:

    Heartbeat       top-level control loop tick
    Planner         creates the next agent task
    Enforcer        CI gate, constitution audit, review and merge
    Strategist      post-merge learning, restarts the loop
    Troubleshooter  answers an agent's blocking question

All services share a ServiceContext holding the external clients and the
state store.
"""
