"""pytest-testwise: per-test coverage and test-impact analysis for pytest.

Every test gets its own coverage. Every change gets only the tests it needs.

pytest-testwise instruments the modules under test with lightweight probes,
attributes the probes hit between the start and the end of each test to that
test, and assembles the result into a testwise coverage report. A remote
test-selection service can use these reports to decide which tests are
impacted by a change.

Example:
    Record testwise coverage for the ``shop`` package::

        $ pytest --testwise --testwise-include='shop.*'

    Run only the tests the selection service considers impacted::

        $ pytest --testwise --testwise-include='shop.*' \\
            --testwise-selection-url=https://tia.example.com/api

    Expose the agent's control channel on a fixed port::

        $ pytest --testwise --testwise-port=7070
"""

from __future__ import annotations


__version__ = '0.4.0'
__all__ = ['__version__']
