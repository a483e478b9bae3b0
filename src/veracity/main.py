import argparse
import logging
import sys
import textwrap
from typing import Optional

import veracity
import veracity.deploy
import veracity.manage
from veracity._output import TerminalBackend, output
from veracity.config import Config
from veracity.log import setup_logging


def main(args: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(
        description=(
            "veracity v{}: deliver secrets to Salt minions through"
            " transient pillar data"
        ).format(veracity.__version__),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.set_defaults(func=parser.print_usage)

    parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable debug mode."
    )
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Configuration file. Defaults to `veracity.cfg` if it exists.",
    )

    subparsers = parser.add_subparsers()

    # Credentials
    credentials = subparsers.add_parser(
        "credentials",
        help=textwrap.dedent(
            """
            Manage stored credentials. Secrets are encrypted with age for
            the recipients listed in the [store] section."""
        ),
    )
    credentials.set_defaults(func=credentials.print_usage)

    sp = credentials.add_subparsers()

    p = sp.add_parser("add-netbird", help="Store a NetBird setup key.")
    p.add_argument("name", help="Name of the credential.")
    p.add_argument(
        "management_url", help="URL of the NetBird management server."
    )
    p.add_argument(
        "--setup-key",
        default=None,
        help="The setup key. Prompted for if not given.",
    )
    p.add_argument("--port", type=int, default=443, help="Management port.")
    p.add_argument("--group", default="", help="NetBird group of the key.")
    p.add_argument("--notes", default="", help="Free form notes.")
    p.set_defaults(func=veracity.manage.add_netbird)

    p = sp.add_parser("add-proxmox", help="Store a Proxmox API token.")
    p.add_argument("name", help="Name of the credential.")
    p.add_argument("proxmox_url", help="URL of the Proxmox API.")
    p.add_argument(
        "username", help="API user, optionally as `user!token_name`."
    )
    p.add_argument("--realm", default="pam", help="Authentication realm.")
    p.add_argument("--token-name", default=None, help="Name of the token.")
    p.add_argument(
        "--api-token",
        default=None,
        help="The token secret. Prompted for if not given.",
    )
    p.add_argument(
        "--minion-id",
        default=None,
        help="Minion on the Proxmox host. Defaults to the host of the URL.",
    )
    p.add_argument(
        "--no-verify-ssl",
        action="store_true",
        help="Do not verify the certificate of the Proxmox API.",
    )
    p.add_argument("--notes", default="", help="Free form notes.")
    p.set_defaults(func=veracity.manage.add_proxmox)

    p = sp.add_parser("list", help="List stored credentials.")
    p.set_defaults(func=veracity.manage.summary)

    p = sp.add_parser("show", help="Show a credential with a masked secret.")
    p.add_argument("name", help="Name of the credential.")
    p.set_defaults(func=veracity.manage.show)

    p = sp.add_parser("toggle", help="Enable or disable a credential.")
    p.add_argument("name", help="Name of the credential.")
    p.set_defaults(func=veracity.manage.toggle)

    p = sp.add_parser("remove", help="Delete a credential.")
    p.add_argument("name", help="Name of the credential.")
    p.set_defaults(func=veracity.manage.remove)

    # Deploy
    p = subparsers.add_parser(
        "deploy", help="Deliver a credential to one or more minions."
    )
    p.add_argument("credential", help="Name of the credential to deliver.")
    p.add_argument("targets", nargs="+", help="Minion ids.")
    p.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=None,
        help="Number of targets processed in parallel. "
        "Overrides the [deploy] setting.",
    )
    p.add_argument(
        "-t",
        "--timeout",
        type=int,
        default=None,
        help="Seconds the state run may take on each target.",
    )
    p.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="Do not start new targets after this many seconds.",
    )
    p.set_defaults(func=veracity.deploy.main)

    # Proxmox
    p = subparsers.add_parser(
        "proxmox",
        help="Run a Proxmox API command on the minion of the Proxmox host.",
    )
    p.add_argument("credential", help="Name of the Proxmox credential.")
    p.add_argument(
        "command",
        help="Command for the proxmox state, e.g. `test_connection`, "
        "`list_vms` or `create_snapshot`.",
    )
    p.add_argument("--vmid", default=None, help="VM or container id.")
    p.add_argument(
        "--type",
        dest="vm_type",
        default="qemu",
        choices=["qemu", "lxc"],
        help="Kind of guest.",
    )
    p.add_argument(
        "--node",
        default=None,
        help="Proxmox node. Defaults to the short hostname of the minion.",
    )
    p.add_argument("--snap-name", default=None, help="Snapshot name.")
    p.add_argument(
        "--description", default=None, help="Snapshot description."
    )
    p.set_defaults(func=veracity.deploy.proxmox)

    # Sweep
    p = subparsers.add_parser(
        "sweep",
        help="Remove pillar documents left behind by interrupted runs.",
    )
    p.set_defaults(func=veracity.manage.sweep)

    # Status
    p = subparsers.add_parser(
        "status", help="Show whether NetBird is connected on a minion."
    )
    p.add_argument("target", help="Minion id.")
    p.set_defaults(func=veracity.manage.status)

    args = parser.parse_args(args)

    # Consume global arguments
    output.enable_debug = args.debug

    # Pass over to function
    if args.func.__name__ == "print_usage":
        args.func()
        sys.exit(1)

    output.backend = TerminalBackend()
    if args.debug:
        setup_logging(["urllib3", "requests"], logging.DEBUG)

    func_args = dict(args._get_kwargs())
    del func_args["func"]
    del func_args["debug"]
    try:
        func_args["config"] = Config.discover(func_args["config"])
        code = args.func(**func_args)
    except veracity.ReportingException as e:
        e.report()
        sys.exit(1)
    if code:
        sys.exit(code)
