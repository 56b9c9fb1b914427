from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import replace

from .config import DriverConfig
from .driver import PwdDriver
from .exceptions import PwdDriverError
from .keygen import bootstrap_certificates, default_org
from .logging_utils import configure_logging
from .store import CertificateStore, default_store_path


class _HelpFormatter(
    argparse.RawTextHelpFormatter,
    argparse.ArgumentDefaultsHelpFormatter,
):
    """Keep multiline examples readable and include defaults."""


CLI_HELP_EPILOG = """Environment:
  PWD_SESSION_ID or PWD_URL     session to create instances in
  PWD_HOSTNAME, PWD_PORT, PWD_SSL_PORT
  PWD_IDENTITY_STRATEGY         archive | embedded | push
  MACHINE_STORAGE_PATH          store root (the default ~/.docker/machine is refused)

Examples:
  pwd-driver -s /tmp/pwd-store bootstrap-certs --name node1
  pwd-driver -s /tmp/pwd-store create --name node1 --pwd-url https://labs.play-with-docker.com/p/abcdef1234
  pwd-driver -s /tmp/pwd-store url --name node1
  pwd-driver -s /tmp/pwd-store remove --name node1
"""


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pwd-driver",
        description="Provision TLS-secured engine instances inside a PWD session.",
        formatter_class=_HelpFormatter,
        epilog=CLI_HELP_EPILOG,
    )
    parser.add_argument(
        "-s",
        "--storage-path",
        default=None,
        help="Machine store root (default: MACHINE_STORAGE_PATH or ~/.docker/machine).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log at DEBUG level and mirror log records to stderr.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser(
        "create", help="Create an instance.", formatter_class=_HelpFormatter
    )
    create.add_argument("--name", required=True, help="Machine name.")
    for flag in PwdDriver.get_create_flags():
        create.add_argument(
            f"--{flag.name}",
            dest=flag.name.replace("-", "_"),
            default=None,
            help=f"{flag.usage} [${flag.env_var}]",
        )
    create.add_argument(
        "--no-name-downgrade",
        action="store_true",
        help="Always report the real driver name.",
    )

    for command, help_text in (
        ("remove", "Remove the instance."),
        ("url", "Print the engine URL."),
        ("ip", "Print the instance IP."),
        ("state", "Print the engine state."),
        ("inspect", "Print the stored driver record as JSON."),
        ("bootstrap-certs", "Create shared CA and client certificates if missing."),
    ):
        sub = subparsers.add_parser(command, help=help_text, formatter_class=_HelpFormatter)
        sub.add_argument("--name", required=True, help="Machine name.")
    return parser


def _store_root(args: argparse.Namespace) -> str:
    if args.storage_path:
        return args.storage_path
    return os.environ.get("MACHINE_STORAGE_PATH") or str(default_store_path())


def _load_driver(args: argparse.Namespace) -> PwdDriver:
    store = CertificateStore(_store_root(args), args.name)
    return PwdDriver.from_record(store.load_record())


def _run_create(args: argparse.Namespace) -> None:
    options = {
        flag.name: getattr(args, flag.name.replace("-", "_"))
        for flag in PwdDriver.get_create_flags()
    }
    config = DriverConfig.from_options(
        options, machine_name=args.name, store_path=args.storage_path
    )
    if args.no_name_downgrade:
        config = replace(config, compat_driver_name=False)
    driver = PwdDriver()
    driver.configure(config)
    instance = driver.create()
    print(f"Created instance {instance.name} ({instance.ip_address})")
    print(instance.url)


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        configure_logging(
            level="DEBUG" if args.debug else None,
            stderr=True if args.debug else None,
        )

        if args.command == "create":
            _run_create(args)
            return 0

        if args.command == "bootstrap-certs":
            store = CertificateStore(_store_root(args), args.name)
            created = bootstrap_certificates(store, default_org(args.name))
            print(
                f"{'Created' if created else 'Found existing'} certificates in {store.certs_dir}"
            )
            return 0

        driver = _load_driver(args)
        if args.command == "remove":
            driver.remove()
            print(f"Removed {driver.get_machine_name()}")
        elif args.command == "url":
            print(driver.get_url())
        elif args.command == "ip":
            print(driver.get_ip())
        elif args.command == "state":
            print(driver.get_state().value or "None")
        elif args.command == "inspect":
            print(json.dumps(driver.record.to_dict(), indent=2, sort_keys=True))
        else:
            raise ValueError("Unsupported command.")
        return 0
    except (PwdDriverError, ValueError) as exc:
        print(f"pwd-driver error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
