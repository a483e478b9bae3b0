import os.path
import traceback
from typing import List, Optional

from ._output import output

with open(os.path.dirname(__file__) + "/version.txt") as f:
    __version__ = f.read().strip()


def prepare_error(error):
    return f"{error.__class__.__name__}: {error}"


def prepare_traceback(tb):
    stack = traceback.extract_tb(tb)
    if not stack:
        return "<no-traceback-lines-found>"
    return "".join(traceback.format_list(stack))


class ReportingException(Exception):
    """Exceptions that support user-readable reporting."""

    sort_key = (50,)

    def __str__(self):
        raise NotImplementedError()

    def report(self):
        raise NotImplementedError()


class FileLockedError(ReportingException):
    """A file is already locked and we do not want to block."""

    filename: str

    sort_key = (10,)

    @classmethod
    def from_context(cls, filename):
        self = cls()
        self.filename = str(filename)
        return self

    def __str__(self):
        return "File already locked: {}".format(self.filename)

    def report(self):
        output.error(str(self))


class ConfigurationError(ReportingException):
    """The configuration is incomplete or invalid."""

    message: str
    section: Optional[str]

    sort_key = (0,)

    @classmethod
    def from_context(cls, message, section=None):
        self = cls()
        self.message = message
        self.section = section
        return self

    def __str__(self):
        return str(self.message)

    def report(self):
        output.error(self.message)
        if self.section:
            output.tabular("Section", self.section, red=True)


class DecryptionError(ReportingException):
    """A secret could not be decrypted with any of the known identities."""

    sort_key = (5,)

    @classmethod
    def from_context(cls, name, identities):
        self = cls()
        self.name = name
        self.identities = identities
        return self

    def __str__(self):
        return f"Could not decrypt secret of `{self.name}`"

    def report(self):
        output.error("Could not decrypt secret")
        output.tabular("Credential", self.name, red=True)
        output.tabular(
            "Identities", str(self.identities) + " tried", red=True
        )
        output.tabular(
            "Hint",
            "Set VERACITY_AGE_IDENTITIES to a key listed in the recipients.",
        )


class SaltAPIError(ReportingException):
    """The Salt API refused or failed a request."""

    sort_key = (20,)

    @classmethod
    def from_context(cls, message, endpoint=None, status=None):
        self = cls()
        self.message = message
        self.endpoint = endpoint
        self.status = status
        return self

    def __str__(self):
        return str(self.message)

    def report(self):
        output.error(self.message)
        if self.endpoint:
            output.tabular("Endpoint", self.endpoint, red=True)
        if self.status:
            output.tabular("HTTP status", str(self.status), red=True)


class AuthenticationError(SaltAPIError):
    """Logging in to the Salt API failed."""

    def report(self):
        output.error("Salt API authentication failed")
        output.tabular("Message", self.message, red=True)


class SaltConnectionError(SaltAPIError):
    """The Salt API could not be reached in time."""

    def report(self):
        output.error("Cannot connect to Salt API")
        output.tabular("Message", self.message, red=True)
        if self.endpoint:
            output.tabular("Endpoint", self.endpoint, red=True)


class SaltTimeout(SaltConnectionError):
    """A Salt API request did not finish within its timeout."""

    def report(self):
        output.error("Salt API request timed out")
        output.tabular("Message", self.message, red=True)
        if self.endpoint:
            output.tabular("Endpoint", self.endpoint, red=True)


class InvalidCredential(ReportingException):
    """A credential record did not pass validation."""

    name: str
    problems: List[str]

    sort_key = (1,)

    @classmethod
    def from_context(cls, name, problems):
        self = cls()
        self.name = name
        self.problems = list(problems)
        return self

    def __str__(self):
        return "Invalid credential `{}`: {}".format(
            self.name, "; ".join(self.problems)
        )

    def report(self):
        output.error("Invalid credential `{}`".format(self.name))
        for problem in self.problems:
            output.line("    " + problem, red=True)


class DuplicateCredential(ReportingException):
    sort_key = (1,)

    @classmethod
    def from_context(cls, name):
        self = cls()
        self.name = name
        return self

    def __str__(self):
        return "Duplicate credential: " + self.name

    def report(self):
        output.error('Duplicate credential "{}"'.format(self.name))


class CredentialNotFound(ReportingException):
    sort_key = (1,)

    @classmethod
    def from_context(cls, name):
        self = cls()
        self.name = name
        return self

    def __str__(self):
        return "Unknown credential: " + self.name

    def report(self):
        output.error("Unknown credential")
        output.tabular("Credential", self.name, red=True)


class CredentialDisabled(ReportingException):
    """Deployments with a disabled credential are refused."""

    sort_key = (1,)

    @classmethod
    def from_context(cls, name):
        self = cls()
        self.name = name
        return self

    def __str__(self):
        return "Credential is disabled: " + self.name

    def report(self):
        output.error("Credential is disabled")
        output.tabular("Credential", self.name, red=True)
        output.tabular(
            "Hint", "Enable it with `veracity credentials toggle`."
        )


class UsageConflict(ReportingException):
    """The usage counter changed between reading and updating a record."""

    sort_key = (30,)

    @classmethod
    def from_context(cls, name, expected, actual):
        self = cls()
        self.name = name
        self.expected = expected
        self.actual = actual
        return self

    def __str__(self):
        return (
            f"Usage counter of `{self.name}` is {self.actual},"
            f" expected {self.expected}"
        )

    def report(self):
        output.error(str(self))


class InvalidScope(ReportingException):
    """A target or scope name cannot be mapped to a pillar path safely."""

    sort_key = (2,)

    @classmethod
    def from_context(cls, kind, value):
        self = cls()
        self.kind = kind
        self.value = value
        return self

    def __str__(self):
        return f"Invalid {self.kind} for a pillar path: {self.value!r}"

    def report(self):
        output.error(str(self))


class UnknownPurpose(ReportingException):
    sort_key = (2,)

    @classmethod
    def from_context(cls, name, known):
        self = cls()
        self.name = name
        self.known = sorted(known)
        return self

    def __str__(self):
        return "Unknown deployment purpose: " + self.name

    def report(self):
        output.error("Unknown deployment purpose")
        output.tabular("Purpose", self.name, red=True)
        output.tabular("Known", ", ".join(self.known))


class InvalidTransition(Exception):
    """A deployment attempt tried to skip or repeat a step."""
