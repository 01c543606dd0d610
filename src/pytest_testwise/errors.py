"""Exception taxonomy for pytest-testwise.

Each error tells the caller how far the damage reaches:

- MalformedClassError: one module cannot be analyzed. Skip it, keep going.
- DumpError: the coverage of one test is lost. The run continues.
- InvalidTransitionError: the start/end protocol was misused. Always a bug
  in the caller or the integration, never corrected silently.
- RunStartError: test selection failed after one retry. The caller must fall
  back to running every test.
- UploadError: the finished report could not be handed off.
"""

from __future__ import annotations


class TestwiseError(Exception):
    """Base class for all pytest-testwise errors."""

    __test__ = False


class MalformedClassError(TestwiseError):
    """A content buffer is not a module of the expected instrumentation format."""


class DumpError(TestwiseError):
    """The coverage of a test could not be collected.

    Raised when the coverage runtime cannot be read (e.g. because it shut
    down) or when its probes cannot be mapped to lines.
    """


class InvalidTransitionError(TestwiseError):
    """A test boundary event arrived in a state that does not allow it."""


class RunStartError(TestwiseError):
    """The test-selection service could not be reached, even after a retry."""


class UploadError(TestwiseError):
    """A testwise coverage report could not be uploaded."""
