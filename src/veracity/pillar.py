"""Transient, minion-scoped pillar documents on the Salt master.

A document for `(target, scope)` lives at `<root>/<target>/<scope>.sls`.
Only that minion's pillar top entry includes its directory, so a refresh on
any other minion never sees it.

"""
import posixpath
import re

import yaml

from veracity import InvalidScope
from veracity._output import output

DEFAULT_ROOT = "/srv/pillar/minions"
DOCUMENT_MODE = "0600"

NAME_PATTERN = re.compile(r"\A[A-Za-z0-9_][A-Za-z0-9_.@-]*\Z")


def check_name(kind, value):
    if (
        not isinstance(value, str)
        or not NAME_PATTERN.match(value)
        or ".." in value
    ):
        raise InvalidScope.from_context(kind, value)
    return value


class PillarLayout(object):

    def __init__(self, root=DEFAULT_ROOT):
        self.root = root.rstrip("/") or "/"

    def directory(self, target):
        return posixpath.join(self.root, check_name("target", target))

    def path(self, target, scope):
        return posixpath.join(
            self.directory(target), check_name("scope", scope) + ".sls"
        )

    def parse(self, path):
        """Return `(target, scope)` for a document path or None."""
        prefix = self.root.rstrip("/") + "/"
        if not path.startswith(prefix) or not path.endswith(".sls"):
            return None
        parts = path[len(prefix):-len(".sls")].split("/")
        if len(parts) != 2:
            return None
        target, scope = parts
        if not NAME_PATTERN.match(target) or not NAME_PATTERN.match(scope):
            return None
        return target, scope


def render(scope, data):
    """Render the document so states read it as `pillar[scope][key]`."""
    return yaml.safe_dump(
        {scope: dict(data)}, default_flow_style=False, sort_keys=True
    )


def sweep(client, scopes, locks=None):
    """Delete documents left behind by interrupted deployments.

    Only documents of known `scopes` are touched, and only while nobody
    holds the scope lock for them. Returns `(removed, failed)` as lists of
    `(target, scope)` pairs.

    """
    removed, failed = [], []
    for path in client.list_scoped_documents():
        parsed = client.layout.parse(path)
        if parsed is None:
            continue
        target, scope = parsed
        if scope not in scopes:
            continue
        if locks is not None and locks.is_held(target, scope):
            output.step(
                target, "Skipping `{}`, deployment in progress".format(scope)
            )
            continue
        result = client.delete_scoped_document(target, scope)
        if result.success:
            output.step(target, "Removed stale pillar `{}`".format(scope))
            removed.append(parsed)
        else:
            output.step(target, result.error, red=True)
            failed.append(parsed)
    return removed, failed
