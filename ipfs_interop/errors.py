"""
errors.py – Failure taxonomy of the harness.

  • SetupError          spawn / connect failure, fatal to a test group
  • NodeAPIError        an operation failed on a node
      NotFoundError     name never published, content unreachable (often expected)
  • PropagationTimeout  a wait for asynchronous propagation ran out
  • AssertionMismatch   a scenario observed the wrong value
"""

import reprlib

_short = reprlib.Repr()
_short.maxstring = 60
_short.maxother = 60


class InteropError(Exception):
    """Base class for every error raised by the harness."""


# ── Setup ────────────────────────────────────────────────────────────────

class SetupError(InteropError):
    """A topology could not be brought up."""


class SpawnError(SetupError):
    pass


class BinaryNotFoundError(SpawnError):
    pass


class ConnectError(SetupError):
    pass


# ── Node operations ──────────────────────────────────────────────────────

class NodeNotReadyError(InteropError):
    """The node process is up but cannot answer requests yet."""


class NodeStateError(InteropError):
    """An operation was issued on a handle that is not running."""


class NodeAPIError(InteropError):
    def __init__(self, message: str, code: int | None = None, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


class NotFoundError(NodeAPIError):
    pass


# ── Scenario outcomes ────────────────────────────────────────────────────

class PropagationTimeout(InteropError, TimeoutError):
    def __init__(self, message: str, timeout: float):
        super().__init__(message)
        self.timeout = timeout


class AssertionMismatch(InteropError):
    def __init__(self, label: str, expected, actual):
        super().__init__(
            f"{label}: expected {describe(expected)}, got {describe(actual)}"
        )
        self.label = label
        self.expected = expected
        self.actual = actual


def describe(value) -> str:
    """Short printable form of a value; byte strings show length and prefix."""
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes {bytes(value[:8]).hex()}…>"
    return _short.repr(value)
