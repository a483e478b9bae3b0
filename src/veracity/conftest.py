import os

import pytest

from veracity.fixtures import (  # noqa: F401 shared fixtures
    age_identity,
    memory_store,
    netbird_key,
    proxmox_key,
    recipient,
    salt,
    store,
)


@pytest.fixture(autouse=True)
def output(monkeypatch):
    from veracity import output
    from veracity._output import TestBackend

    backend = TestBackend()
    monkeypatch.setattr(output, "backend", backend)
    monkeypatch.setattr(output, "enable_debug", False)
    return output


@pytest.fixture(autouse=True)
def ensure_environment(monkeypatch):
    for variable in [
        "SALT_API_URL",
        "SALT_API_USERNAME",
        "SALT_API_PASSWORD",
        "SALT_API_EAUTH",
        "GOTIFY_URL",
        "GOTIFY_APP_TOKEN",
        "VERACITY_AGE_IDENTITIES",
    ]:
        monkeypatch.delenv(variable, raising=False)


@pytest.fixture(autouse=True)
def ensure_workingdir(request):
    working_dir = os.getcwd()
    yield
    os.chdir(working_dir)


@pytest.fixture
def locks(tmp_path):
    from veracity.utils import ScopeLocks

    return ScopeLocks(str(tmp_path / "locks"))
