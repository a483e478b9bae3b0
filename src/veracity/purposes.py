import json
import re

from importlib_metadata import entry_points

from veracity import UnknownPurpose
from veracity.credentials import NetbirdSetupKey, ProxmoxApiKey
from veracity.utils import short_hostname

ENTRY_POINT_GROUP = "veracity.purposes"


class Purpose(object):
    """What a deployment delivers and which state consumes it.

    The pillar document is a flat mapping read by `routine` on the minion
    as `pillar[scope][key]`.

    """

    name = None
    scope = None
    routine = None
    credential_class = None
    timeout = 300

    def accepts(self, credential):
        return isinstance(credential, self.credential_class)

    def document(self, credential, target):
        raise NotImplementedError()

    def parse_output(self, applied):
        """What to report for a successful `apply_routine` result."""
        return applied.output

    def __repr__(self):
        return "<{} scope={!r} routine={!r}>".format(
            self.__class__.__name__, self.scope, self.routine
        )


class NetbirdEnrollment(Purpose):
    """Install the NetBird agent and join it using a setup key."""

    name = "netbird"
    scope = "netbird"
    routine = "netbird"
    credential_class = NetbirdSetupKey

    def document(self, credential, target):
        return {
            "management_url": credential.full_management_url,
            "setup_key": credential.setup_key,
        }


class ProxmoxCommand(Purpose):
    """Run one Proxmox API command from the Proxmox host's minion."""

    name = "proxmox"
    scope = "proxmox"
    routine = "proxmox.command"
    credential_class = ProxmoxApiKey
    timeout = 60

    def __init__(
        self,
        command="test_connection",
        vmid=None,
        vm_type="qemu",
        node=None,
        snap_name=None,
        snap_description=None,
    ):
        self.command = command
        self.vmid = vmid
        self.vm_type = vm_type
        self.node = node
        self.snap_name = snap_name
        self.snap_description = snap_description

    def document(self, credential, target):
        document = {
            "api_url": credential.proxmox_url,
            "username": credential.api_username,
            "token": credential.token,
            "verify_ssl": credential.verify_ssl,
            "command": self.command,
            "node": self.node or short_hostname(target),
            "vmid": "" if self.vmid is None else str(self.vmid),
            "vm_type": self.vm_type or "",
        }
        if self.snap_name:
            document["snap_name"] = self.snap_name
        if self.snap_description:
            document["snap_description"] = self.snap_description
        return document

    def parse_output(self, applied):
        """The command prints one JSON object, possibly among log lines."""
        text = applied.details.get("stdout")
        if not text:
            return {
                "success": False,
                "error": "The command printed nothing",
                "raw_output": applied.output,
            }
        match = re.search(r"\{.*\}", text, re.S)
        try:
            return json.loads(match.group(0) if match else text)
        except ValueError as e:
            return {
                "success": False,
                "error": "Failed to parse response: {}".format(e),
                "raw_output": text,
            }


BUILTIN = {p.name: p for p in [NetbirdEnrollment, ProxmoxCommand]}


def available():
    purposes = dict(BUILTIN)
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        purposes.setdefault(ep.name, ep)
    return purposes


def get(name, **kw):
    purposes = available()
    if name not in purposes:
        raise UnknownPurpose.from_context(name, purposes)
    factory = purposes[name]
    if not isinstance(factory, type):
        factory = factory.load()
    return factory(**kw)


def for_credential(credential, **kw):
    for name, factory in BUILTIN.items():
        if isinstance(credential, factory.credential_class):
            return factory(**kw)
    raise UnknownPurpose.from_context(credential.kind, available())


def known_scopes():
    scopes = set()
    for name in available():
        scopes.add(get(name).scope)
    return scopes
