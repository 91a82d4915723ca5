"""CLI entry points for vmware-vm-bootstrap."""

from __future__ import annotations

import argparse
import dataclasses
import json
import signal
import threading
from pathlib import Path
from typing import Dict, List, Optional

from vmbootstrap import lifecycle
from vmbootstrap.bootstrap import Bootstrapper
from vmbootstrap.config import UBUNTU_RELEASES, load_vm_config, set_defaults, validate
from vmbootstrap.constants import _SENSITIVE_FIELDS
from vmbootstrap.exceptions import BootstrapError, CancelledError
from vmbootstrap.models import UbuntuRelease, VMConfig, VMHandle
from vmbootstrap.utils import log, set_verbose


def list_versions(releases: Optional[Dict[str, UbuntuRelease]] = None) -> None:
    """Print registered Ubuntu releases."""
    if releases is None:
        releases = UBUNTU_RELEASES
    if not releases:
        log("WARN", "No Ubuntu releases registered")
        return
    max_key = max(len(k) for k in releases)
    for version in sorted(releases):
        release = releases[version]
        verified = "sha256" if release.checksum else "unverified"
        print(f"  {version:<{max_key}}  {release.url}  ({verified})")


def show_config(cfg: VMConfig) -> None:
    """Print the resolved VM configuration with secrets masked."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS and value:
            print(f"  {field.name}: ********")
        elif isinstance(value, list):
            print(f"  {field.name}: {', '.join(str(v) for v in value) or '-'}")
        else:
            print(f"  {field.name}: {value}")


def print_result(handle: VMHandle) -> None:
    lines = [
        f"  VM:       {handle.name}",
        f"  IP:       {handle.ip_address}",
        f"  Hostname: {handle.hostname}",
        f"  SSH:      {'ready' if handle.ssh_ready else 'not verified'}",
    ]
    max_len = max(len(line) for line in lines)
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * (max_len + 2)}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * (max_len + 2)}{reset}", flush=True)


def _load(config_path: str) -> VMConfig:
    cfg = load_vm_config(Path(config_path))
    set_defaults(cfg)
    return cfg


def _run_create(args: argparse.Namespace, cancel: threading.Event) -> int:
    cfg = _load(args.config)

    if args.show_config:
        show_config(cfg)
        return 0

    validate(cfg)
    if args.dry_run:
        log("INFO", "=== Configuration ===")
        show_config(cfg)
        log("INFO", f"Profile:     {cfg.profile} {cfg.os_version}")
        log("INFO", f"Placement:   {cfg.datacenter} / {cfg.datastore} (ISOs on {cfg.effective_iso_datastore})")
        log("INFO", f"Network:     {cfg.network_name} {cfg.ip_address}/{cfg.netmask} via {cfg.gateway}")
        log("INFO", "=== Dry-run complete (no VM created) ===")
        return 0

    handle = Bootstrapper(cancel=cancel).bootstrap(cfg)
    print_result(handle)
    if args.output:
        Path(args.output).write_text(json.dumps(handle.as_dict(), indent=2))
        log("INFO", f"Result written to {args.output}")
    return 0


def _run_exists(args: argparse.Namespace) -> int:
    cfg = _load(args.config)
    exists = lifecycle.node_exists(cfg)
    print("yes" if exists else "no")
    return 0 if exists else 2


def _run_delete(args: argparse.Namespace) -> int:
    cfg = _load(args.config)
    lifecycle.delete_node(cfg)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vmbootstrap",
        description="Provision an Ubuntu or Talos VM on vCenter, unattended",
    )
    parser.add_argument("--verbose", action="store_true", help="Show debug output")
    sub = parser.add_subparsers(dest="command")

    create = sub.add_parser("create", help="Create and install a VM")
    create.add_argument("-c", "--config", required=True, help="VM config file (YAML)")
    create.add_argument("--show-config", action="store_true", help="Show resolved VM configuration and exit")
    create.add_argument("--dry-run", action="store_true", help="Validate config, then exit")
    create.add_argument("-o", "--output", help="Write the bootstrap result as JSON to this file")

    sub.add_parser("list-versions", help="List supported Ubuntu versions")

    exists = sub.add_parser("exists", help="Report whether the VM exists (exit 2 if not)")
    exists.add_argument("-c", "--config", required=True, help="VM config file (YAML)")

    delete = sub.add_parser("delete", help="Delete the VM if it exists")
    delete.add_argument("-c", "--config", required=True, help="VM config file (YAML)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        set_verbose(True)

    if args.command is None:
        parser.print_help()
        return 1
    if args.command == "list-versions":
        list_versions()
        return 0

    cancel = threading.Event()

    def _cancel(signum, frame):
        log("WARN", "Interrupt received; cancelling (cleanup will run)")
        cancel.set()

    prev_sigint = signal.signal(signal.SIGINT, _cancel)
    prev_sigterm = signal.signal(signal.SIGTERM, _cancel)
    try:
        if args.command == "create":
            return _run_create(args, cancel)
        if args.command == "exists":
            return _run_exists(args)
        return _run_delete(args)
    except CancelledError as exc:
        log("ERROR", f"Cancelled: {exc}")
        return 130
    except BootstrapError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        signal.signal(signal.SIGINT, prev_sigint)
        signal.signal(signal.SIGTERM, prev_sigterm)
