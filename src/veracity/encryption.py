"""age encryption of individual secret values.

Values are stored base64 encoded so they fit into a line of the cleartext
credential store file.

"""
import base64
import getpass
import os
import os.path
from typing import Dict, List

import pyrage
from cryptography.hazmat.primitives import serialization

from veracity import DecryptionError
from veracity._output import output

IDENTITIES_VARIABLE = "VERACITY_AGE_IDENTITIES"
PASSPHRASE_VARIABLE = "VERACITY_AGE_IDENTITY_PASSPHRASE"

DEFAULT_IDENTITIES = [
    "~/.config/veracity/identity.txt",
    "~/.ssh/id_ed25519",
    "~/.ssh/id_rsa",
]

known_passphrases: Dict[str, str] = {}


def get_passphrase(identity: str) -> str:
    """Prompt the user for a passphrase if necessary."""
    if identity in known_passphrases:
        return known_passphrases[identity]
    passphrase = os.environ.get(PASSPHRASE_VARIABLE)
    if not passphrase:
        passphrase = getpass.getpass(
            "Enter passphrase for {}: ".format(identity)
        )
    known_passphrases[identity] = passphrase
    return passphrase


def load_identity(path):
    with open(path, "rb") as f:
        key_content = f.read()

    for line in key_content.decode("utf-8", errors="replace").splitlines():
        line = line.strip()
        if line.startswith("AGE-SECRET-KEY-"):
            return pyrage.x25519.Identity.from_str(line)

    try:
        priv_key = serialization.load_ssh_private_key(key_content, None)
    except TypeError:
        # encrypted key
        passphrase = get_passphrase(path).encode("utf-8")
        priv_key = serialization.load_ssh_private_key(key_content, passphrase)

    pkey = priv_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.OpenSSH,
        serialization.NoEncryption(),
    )
    return pyrage.ssh.Identity.from_buffer(pkey)


def get_identities(environ=None) -> list:
    environ = os.environ if environ is None else environ
    configured = environ.get(IDENTITIES_VARIABLE)
    if configured:
        candidates = [x.strip() for x in configured.split(",") if x.strip()]
    else:
        candidates = DEFAULT_IDENTITIES
    paths = [
        os.path.expanduser(x)
        for x in candidates
        if os.path.exists(os.path.expanduser(x))
    ]
    output.annotate(f"Found identities: {paths}", debug=True)

    identities = []
    for path in paths:
        try:
            identities.append(load_identity(path))
        except Exception as e:
            output.annotate(
                f"Ignoring identity {path}: {e}", debug=True, red=True
            )
    return identities


def parse_recipient(recipient: str):
    recipient = recipient.strip()
    if recipient.startswith("age1"):
        return pyrage.x25519.Recipient.from_str(recipient)
    return pyrage.ssh.Recipient.from_str(recipient)


def encrypt_string(content: str, recipients: List[str]) -> str:
    if not recipients:
        raise ValueError("Need at least one recipient to encrypt secrets.")
    parsed = [parse_recipient(r) for r in recipients]
    b = pyrage.encrypt(content.encode("utf-8"), parsed)
    return base64.b64encode(b).decode("ascii")


def decrypt_string(content: str, identities: list, name="<unknown>") -> str:
    b = base64.b64decode(content)
    for identity in identities:
        try:
            return pyrage.decrypt(b, [identity]).decode("utf-8")
        except pyrage.DecryptError:
            continue
    raise DecryptionError.from_context(name, len(identities))
