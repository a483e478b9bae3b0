import os
import os.path
import tempfile
from typing import List, Optional

from configupdater import ConfigUpdater

from veracity import CredentialNotFound, DuplicateCredential
from veracity._output import output
from veracity.credentials import Credential, from_metadata
from veracity.encryption import decrypt_string, encrypt_string, get_identities
from veracity.utils import locked

SECTION_PREFIX = "credential:"


def _escape(value):
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _unescape(value):
    result = []
    chars = iter(value)
    for c in chars:
        if c == "\\":
            c = next(chars, "")
            result.append("\n" if c == "n" else c)
        else:
            result.append(c)
    return "".join(result)


class CredentialStore(object):
    """Credential records in an INI file with age-encrypted secrets.

    Only the secret option of each section is encrypted, everything else
    stays readable and diffable. All modifications are read-modify-write
    cycles under an exclusive lock on the store.

    """

    def __init__(self, path, recipients: List[str], identities=None):
        self.path = path
        self.recipients = list(recipients)
        self._identities = identities

    @classmethod
    def from_config(cls, config):
        section = config["store"]
        return cls(section["path"], section.as_list("recipients"))

    @property
    def identities(self):
        if self._identities is None:
            self._identities = get_identities()
        return self._identities

    @property
    def lockfile(self):
        return self.path + ".lock"

    def _read(self) -> ConfigUpdater:
        updater = ConfigUpdater()
        if os.path.exists(self.path):
            updater.read(self.path)
        return updater

    def _write(self, updater: ConfigUpdater):
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".credentials-")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(str(updater))
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _section_name(self, name):
        return SECTION_PREFIX + name

    def _load(self, updater, name) -> Credential:
        section = self._section_name(name)
        if not updater.has_section(section):
            raise CredentialNotFound.from_context(name)
        values = {
            key: _unescape(option.value or "")
            for key, option in updater[section].items()
        }
        probe = from_metadata(name, values, None)
        ciphertext = values.pop(probe.secret_attribute, "")
        secret = (
            decrypt_string(ciphertext, self.identities, name)
            if ciphertext
            else None
        )
        return from_metadata(name, values, secret)

    def _store(self, updater, credential, keep_ciphertext=None):
        section = self._section_name(credential.name)
        if not updater.has_section(section):
            updater.add_section(section)
        for key in list(updater[section].keys()):
            del updater[section][key]
        for key, value in credential.metadata().items():
            updater[section][key] = _escape(value)
        if keep_ciphertext:
            ciphertext = keep_ciphertext
        else:
            ciphertext = encrypt_string(credential.secret, self.recipients)
        updater[section][credential.secret_attribute] = ciphertext

    def _ciphertext(self, updater, credential):
        section = self._section_name(credential.name)
        if not updater.has_section(section):
            return None
        option = updater[section].get(credential.secret_attribute)
        return option.value if option is not None else None

    def names(self):
        updater = self._read()
        return [
            s[len(SECTION_PREFIX):]
            for s in updater.sections()
            if s.startswith(SECTION_PREFIX)
        ]

    def list(self) -> List[Credential]:
        updater = self._read()
        return [self._load(updater, name) for name in self.names()]

    def get(self, name) -> Credential:
        return self._load(self._read(), name)

    def __contains__(self, name):
        return name in self.names()

    def add(self, credential: Credential):
        credential.validate()
        with locked(self.lockfile, blocking=True):
            updater = self._read()
            if updater.has_section(self._section_name(credential.name)):
                raise DuplicateCredential.from_context(credential.name)
            self._store(updater, credential)
            self._write(updater)
        output.step(
            credential.name,
            "Added {} credential ({})".format(
                credential.kind, credential.masked_secret
            ),
        )
        return credential

    def update(self, credential: Credential):
        credential.validate()
        with locked(self.lockfile, blocking=True):
            updater = self._read()
            current = self._load(updater, credential.name)
            keep = None
            if current.secret == credential.secret:
                keep = self._ciphertext(updater, credential)
            self._store(updater, credential, keep_ciphertext=keep)
            self._write(updater)
        return credential

    def remove(self, name):
        """Forget a credential. Already deployed targets are not touched."""
        with locked(self.lockfile, blocking=True):
            updater = self._read()
            section = self._section_name(name)
            if not updater.has_section(section):
                raise CredentialNotFound.from_context(name)
            updater.remove_section(section)
            self._write(updater)
        output.step(name, "Removed credential")

    def _modify(self, name, change):
        with locked(self.lockfile, blocking=True):
            updater = self._read()
            credential = self._load(updater, name)
            change(credential)
            self._store(
                updater,
                credential,
                keep_ciphertext=self._ciphertext(updater, credential),
            )
            self._write(updater)
        return credential

    def toggle(self, name) -> Credential:
        credential = self._modify(
            name, lambda c: c.set_enabled(not c.enabled)
        )
        output.step(
            name,
            "Credential {}".format(
                "enabled" if credential.enabled else "disabled"
            ),
        )
        return credential

    def set_enabled(self, name, flag) -> Credential:
        return self._modify(name, lambda c: c.set_enabled(flag))

    def mark_used(self, name, when=None) -> Credential:
        """Count one use of the credential.

        The counter is compared and bumped while the store is locked, so
        concurrent runs never lose an increment.

        """
        return self._modify(
            name, lambda c: c.increment_usage(c.usage_count, when)
        )


class MemoryCredentialStore(object):
    """Credential store without persistence, for embedding and tests."""

    def __init__(self, credentials: Optional[List[Credential]] = None):
        self._credentials = {}
        for credential in credentials or []:
            self.add(credential)

    def names(self):
        return list(self._credentials)

    def list(self):
        return list(self._credentials.values())

    def get(self, name):
        try:
            return self._credentials[name]
        except KeyError:
            raise CredentialNotFound.from_context(name)

    def __contains__(self, name):
        return name in self._credentials

    def add(self, credential):
        credential.validate()
        if credential.name in self._credentials:
            raise DuplicateCredential.from_context(credential.name)
        self._credentials[credential.name] = credential
        return credential

    def update(self, credential):
        credential.validate()
        self.get(credential.name)
        self._credentials[credential.name] = credential
        return credential

    def remove(self, name):
        self.get(name)
        del self._credentials[name]

    def toggle(self, name):
        credential = self.get(name)
        credential.set_enabled(not credential.enabled)
        return credential

    def set_enabled(self, name, flag):
        credential = self.get(name)
        credential.set_enabled(flag)
        return credential

    def mark_used(self, name, when=None):
        credential = self.get(name)
        credential.increment_usage(credential.usage_count, when)
        return credential
