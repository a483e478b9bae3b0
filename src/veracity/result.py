import enum
from typing import Any, Optional


class ErrorKind(enum.Enum):
    """Why a remote step or a deployment attempt did not succeed."""

    WRITE = "write"
    REFRESH = "refresh"
    APPLY = "apply"
    CLEANUP = "cleanup"
    TIMEOUT = "timeout"
    LOCKED = "locked"
    SKIPPED = "skipped"
    UNEXPECTED = "unexpected"


class Result(object):
    """Outcome of a single remote call.

    Remote failures are reported as data: callers check ``success`` and
    read ``error`` instead of catching exceptions.

    """

    def __init__(
        self,
        success: bool,
        output: Any = None,
        error: Optional[str] = None,
        kind: Optional[ErrorKind] = None,
        **details,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.kind = kind
        self.details = details

    @classmethod
    def ok(cls, output=None, **details):
        return cls(True, output=output, **details)

    @classmethod
    def fail(cls, error, kind=None, output=None, **details):
        return cls(False, output=output, error=error, kind=kind, **details)

    def __eq__(self, other):
        if not isinstance(other, Result):
            return NotImplemented
        return (
            self.success,
            self.output,
            self.error,
            self.kind,
            self.details,
        ) == (other.success, other.output, other.error, other.kind, other.details)

    def __repr__(self):
        if self.success:
            return "<Result ok>"
        kind = self.kind.value if self.kind else "error"
        return "<Result {}: {}>".format(kind, self.error)

    def as_dict(self):
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
        }
