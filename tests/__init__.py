"""
ISAC Base Station Test Suite

Author: Vítor Eulálio Reis <vitor.ereis@proton.me>
Copyright (c) 2025

Test organization:
- tests/unit/: Unit tests for link estimation, mode arbitration, filtering,
  the fleet registry, master election and the wire protocol
- tests/integration/: Coordinator event flows and the dashboard bridge
- tests/regression/: Regression tests for fixed bugs

Run tests:
    pytest                      # All tests
    pytest -m unit              # Unit tests only
    pytest -m integration       # Integration tests only
    pytest -m regression        # Regression tests only
    pytest tests/unit/          # One directory
    pytest -k hysteresis        # Tests matching 'hysteresis'
"""
