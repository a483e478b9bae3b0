import pyrage
import pytest

from veracity.credentials import NetbirdSetupKey, ProxmoxApiKey
from veracity.pillar import PillarLayout
from veracity.result import ErrorKind, Result
from veracity.store import CredentialStore, MemoryCredentialStore

SETUP_KEY = "4F0F9A28-C7F6-4E87-B855-015FC929FC63"
API_TOKEN = "0b6c3a4e-1111-2222-3333-444455556666"


class FakeSaltClient(object):
    """Records every workflow call, in order, and keeps written documents.

    A step answers with whatever `respond(step, target, outcome)` registered
    for the target: a `Result`, or an exception to raise.

    """

    def __init__(self, grains=None):
        self.layout = PillarLayout()
        self.calls = []
        self.documents = {}
        self.responses = {}
        self._grains = grains or {}

    def respond(self, step, target, outcome):
        self.responses[(step, target)] = outcome

    def fail(self, step, target, outcome=None):
        if outcome is None:
            outcome = Result.fail("{} failed".format(step))
        self.respond(step, target, outcome)

    def _outcome(self, step, target):
        outcome = self.responses.get((step, target))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def calls_for(self, target):
        return [c[0] for c in self.calls if c[1] == target]

    def write_scoped_document(self, target, scope, data):
        self.calls.append(("write", target, scope, dict(data)))
        failed = self._outcome("write", target)
        if failed is not None:
            return failed
        self.documents[(target, scope)] = dict(data)
        return Result.ok(self.layout.path(target, scope))

    def refresh(self, target):
        self.calls.append(("refresh", target))
        outcome = self._outcome("refresh", target)
        return outcome if outcome is not None else Result.ok(True)

    def apply_routine(self, target, routine, timeout=300):
        self.calls.append(("apply", target, routine, timeout))
        outcome = self._outcome("apply", target)
        if outcome is not None:
            return outcome
        return Result.ok("{} applied".format(routine))

    def delete_scoped_document(self, target, scope):
        self.calls.append(("delete", target, scope))
        failed = self._outcome("delete", target)
        if failed is not None:
            return failed
        self.documents.pop((target, scope), None)
        return Result.ok(self.layout.path(target, scope))

    def list_scoped_documents(self):
        return sorted(
            self.layout.path(target, scope)
            for target, scope in self.documents
        )

    def grains(self, target):
        self.calls.append(("grains", target))
        failed = self._outcome("grains", target)
        if failed is not None:
            return {}
        return self._grains.get(target, {})

    def run_command(self, target, fun, args=None, kwargs=None, timeout=None):
        self.calls.append(("run", target, fun, args, timeout))
        outcome = self._outcome("run", target)
        return outcome if outcome is not None else Result.ok("")


def timeout_result():
    return Result.fail("Request timeout: read timed out", ErrorKind.TIMEOUT)


@pytest.fixture
def salt():
    return FakeSaltClient()


@pytest.fixture
def netbird_key():
    return NetbirdSetupKey(
        "office",
        management_url="netbird.example.com",
        setup_key=SETUP_KEY,
        port=443,
        netbird_group="servers",
    )


@pytest.fixture
def proxmox_key():
    return ProxmoxApiKey(
        "cluster",
        proxmox_url="https://pve1.example.com:8006",
        username="automation!deploy",
        api_token=API_TOKEN,
    )


@pytest.fixture
def memory_store(netbird_key, proxmox_key):
    return MemoryCredentialStore([netbird_key, proxmox_key])


@pytest.fixture
def age_identity(tmp_path, monkeypatch):
    identity = pyrage.x25519.Identity.generate()
    path = tmp_path / "identity.txt"
    path.write_text(str(identity) + "\n")
    monkeypatch.setenv("VERACITY_AGE_IDENTITIES", str(path))
    return identity


@pytest.fixture
def recipient(age_identity):
    return str(age_identity.to_public())


@pytest.fixture
def store(tmp_path, recipient):
    return CredentialStore(str(tmp_path / "credentials.cfg"), [recipient])
