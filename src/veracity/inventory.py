import os
import os.path
import sys

import yaml

from veracity._output import output
from veracity.credentials import now
from veracity.utils import locked


def facts(minion_id, grains):
    """Pick the inventory fields out of a minion's grains."""
    ips = grains.get("fqdn_ip4") or grains.get("ipv4") or []
    ips = [ip for ip in ips if not ip.startswith("127.")]
    release = grains.get("osrelease") or grains.get("osmajorrelease")
    return {
        "minion_id": minion_id,
        "hostname": grains.get("id") or grains.get("nodename") or minion_id,
        "ip": ips[0] if ips else None,
        "os": grains.get("os"),
        "os_family": grains.get("os_family"),
        "osrelease": None if release is None else str(release),
    }


class InventoryRegistrar(object):
    """Record the servers a credential was delivered to in a YAML file.

    The file maps minion ids to their last known facts. Entries are updated
    in place, servers not seen in a run are kept.

    """

    def __init__(self, client, path):
        self.client = client
        self.path = path

    @classmethod
    def from_config(cls, client, config):
        path = config["inventory"].get("path")
        if not path:
            return None
        return cls(client, path)

    def load(self):
        if not os.path.exists(self.path):
            return {}
        with open(self.path) as f:
            data = yaml.safe_load(f)
        return data or {}

    def save(self, servers):
        tmp = self.path + ".tmp"
        with open(tmp, "w") as f:
            yaml.safe_dump(servers, f, default_flow_style=False)
        os.replace(tmp, self.path)

    def register(self, targets, when=None):
        when = when or now()
        updates = {}
        for target in targets:
            try:
                grains = self.client.grains(target)
            except Exception:
                output.error(
                    "{}: could not fetch grains".format(target),
                    exc_info=sys.exc_info(),
                )
                continue
            if not grains:
                output.step(target, "No grains, not registered", red=True)
                continue
            entry = facts(target, grains)
            entry["last_seen"] = when.isoformat()
            updates[target] = entry

        if not updates:
            return {}
        with locked(self.path + ".lock", blocking=True):
            servers = self.load()
            servers.update(updates)
            self.save(servers)
        for target in updates:
            output.step(target, "Registered in inventory", debug=True)
        return updates
