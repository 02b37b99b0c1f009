"""
Test Suite

Structure:
    tests/
    ├── conftest.py                   # Settings, mongomock store, fake job queue and lifecycle
    ├── test_condition_evaluator.py   # Rule condition language
    ├── test_approver_resolver.py     # Assignment strategies
    ├── test_quorum.py                # Stage completion
    ├── test_template_service.py      # Authoring, versions, compilation
    ├── test_instance_engine.py       # Instance lifecycle and decisions
    ├── test_action_executor.py       # Workflow actions
    ├── test_sla_timers.py            # Reminders, escalations, rehydration
    ├── test_job_queue.py             # Delayed job queue
    ├── test_approval_gate.py         # Transition gating
    ├── test_jwt.py                   # Bearer tokens
    └── test_api.py                   # HTTP surface

To run tests:
    pytest tests/
"""
