"""Commands that manage credentials and inspect targets."""
import getpass

from veracity import pillar, purposes
from veracity._output import output
from veracity.credentials import NetbirdSetupKey, ProxmoxApiKey
from veracity.salt import SaltClient
from veracity.status import check_connection_status
from veracity.store import CredentialStore
from veracity.utils import ScopeLocks


def _secret(value, prompt):
    if value:
        return value
    return getpass.getpass(prompt)


def _show(credential):
    output.section(credential.name)
    output.tabular("Kind", credential.kind)
    output.tabular("Endpoint", credential.endpoint or "")
    output.tabular("Secret", credential.masked_secret)
    output.tabular("Enabled", "yes" if credential.enabled else "no")
    output.tabular("Used", str(credential.usage_count))
    output.tabular("Last used", credential.last_used_display)
    if credential.notes:
        output.tabular("Notes", credential.notes)


def add_netbird(config, name, management_url, setup_key, port, group, notes):
    store = CredentialStore.from_config(config)
    credential = NetbirdSetupKey(
        name,
        management_url=management_url,
        setup_key=_secret(setup_key, "Setup key: "),
        port=port,
        netbird_group=group,
        notes=notes,
    )
    store.add(credential)


def add_proxmox(
    config,
    name,
    proxmox_url,
    username,
    realm,
    token_name,
    api_token,
    minion_id,
    no_verify_ssl,
    notes,
):
    store = CredentialStore.from_config(config)
    credential = ProxmoxApiKey(
        name,
        proxmox_url=proxmox_url,
        username=username,
        realm=realm,
        token_name=token_name,
        api_token=_secret(api_token, "API token: "),
        minion_id=minion_id,
        verify_ssl=not no_verify_ssl,
        notes=notes,
    )
    store.add(credential)


def summary(config):
    store = CredentialStore.from_config(config)
    credentials = store.list()
    if not credentials:
        output.line("No credentials.")
        return
    for credential in credentials:
        state = "enabled" if credential.enabled else "disabled"
        output.line(
            "{:<20} {:<8} {:<9} {:>4}x  {}".format(
                credential.name,
                credential.kind,
                state,
                credential.usage_count,
                credential.endpoint or "",
            ),
            red=not credential.enabled,
        )


def show(config, name):
    _show(CredentialStore.from_config(config).get(name))


def toggle(config, name):
    CredentialStore.from_config(config).toggle(name)


def remove(config, name):
    CredentialStore.from_config(config).remove(name)


def sweep(config):
    client = SaltClient.from_config(config)
    locks = ScopeLocks(config["deploy"].get("lock_dir"))
    removed, failed = pillar.sweep(client, purposes.known_scopes(), locks)
    output.section(
        "Removed {} stale document(s)".format(len(removed)),
        red=bool(failed),
    )
    return 1 if failed else 0


def status(config, target):
    client = SaltClient.from_config(config)
    result = check_connection_status(client, target)
    if result["error"]:
        output.step(target, result["error"], red=True)
        return 1
    output.step(
        target,
        "connected" if result["connected"] else "not connected",
        green=result["connected"],
        red=not result["connected"],
    )
    output.annotate(result["status"])
    return 0 if result["connected"] else 1
