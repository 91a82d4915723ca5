"""Operations on existing nodes: existence checks, verification, power and deletion."""

from __future__ import annotations

from typing import Any, Callable, Optional

from vmbootstrap.config import DEFAULTS, set_defaults
from vmbootstrap.constants import SSH_PORT
from vmbootstrap.exceptions import BootstrapError, HypervisorError, SSHUnreachableError
from vmbootstrap.models import VCenterCredentials, VMConfig, VMHandle
from vmbootstrap.utils import is_port_open, log
from vmbootstrap.vcenter import VCenterClient

ClientFactory = Callable[..., Any]


def _require_credentials(handle: VMHandle) -> VCenterCredentials:
    if handle.credentials is None:
        raise BootstrapError(f"no vCenter credentials recorded for {handle.name}")
    return handle.credentials


def node_exists(cfg: VMConfig, client_factory: ClientFactory = VCenterClient) -> bool:
    set_defaults(cfg)
    with client_factory(cfg.credentials()) as client:
        return client.find_vm(cfg.datacenter, cfg.name) is not None


def delete_node(cfg: VMConfig, client_factory: ClientFactory = VCenterClient) -> bool:
    """Delete ``cfg.name``; return False if it did not exist."""
    set_defaults(cfg)
    with client_factory(cfg.credentials()) as client:
        vm = client.find_vm(cfg.datacenter, cfg.name)
        if vm is None:
            log("INFO", f"VM {cfg.name} does not exist; nothing to delete")
            return False
        client.destroy(vm)
    log("SUCCESS", f"VM {cfg.name} deleted")
    return True


def power_on(handle: VMHandle, client_factory: ClientFactory = VCenterClient) -> None:
    with client_factory(_require_credentials(handle)) as client:
        client.power_on(handle.managed_object)


def power_off(handle: VMHandle, client_factory: ClientFactory = VCenterClient) -> None:
    with client_factory(_require_credentials(handle)) as client:
        client.power_off(handle.managed_object)


def delete(handle: VMHandle, client_factory: ClientFactory = VCenterClient) -> None:
    with client_factory(_require_credentials(handle)) as client:
        client.destroy(handle.managed_object)


def verify(
    handle: VMHandle,
    client_factory: ClientFactory = VCenterClient,
    port_check: Optional[Callable[[str, int, float], bool]] = None,
) -> None:
    """Check the VM is on, tools run, the hostname matches and SSH answers."""
    port_check = port_check or is_port_open
    with client_factory(_require_credentials(handle)) as client:
        vm = handle.managed_object
        state = client.power_state(vm)
        if state != "poweredOn":
            raise HypervisorError(f"VM {handle.name} is not powered on (state {state})")
        reading = client.read_guest(vm)
        if reading is None or not reading.tools_running:
            raise HypervisorError(f"VMware Tools not running on {handle.name}")
        if handle.hostname and reading.hostname and reading.hostname != handle.hostname:
            raise HypervisorError(
                f"hostname mismatch on {handle.name}: expected {handle.hostname}, got {reading.hostname}"
            )
    if not handle.ip_address:
        raise BootstrapError("ip_address is required for SSH verification")
    if not port_check(handle.ip_address, SSH_PORT, DEFAULTS.timeouts.ssh_connect):
        raise SSHUnreachableError(f"SSH port {SSH_PORT} not accessible at {handle.ip_address}")
    log("SUCCESS", f"VM {handle.name} verified")
