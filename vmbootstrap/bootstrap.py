"""Top-level bootstrap: create a VM and drive it to an SSH-reachable install."""

from __future__ import annotations

import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

from pyVmomi import vmodl

from vmbootstrap import install_stats
from vmbootstrap.cdrom import CDROMManager
from vmbootstrap.cloudinit import CloudInitGenerator, UserDataInput
from vmbootstrap.config import DEFAULTS, set_defaults, validate
from vmbootstrap.constants import SSH_PORT
from vmbootstrap.creator import VMCreator
from vmbootstrap.datastore import DatastoreTransfer
from vmbootstrap.exceptions import (
    AlreadyExistsError,
    BootstrapError,
    CancelledError,
    HypervisorError,
    PowerOnAfterCleanupError,
    SSHUnreachableError,
    UploadFailedError,
)
from vmbootstrap.iso import ISOManager
from vmbootstrap.models import LibDefaults, Timeouts, VCenterCredentials, VMConfig, VMHandle
from vmbootstrap.monitor import InstallMonitor
from vmbootstrap.talos import TalosProvisioner
from vmbootstrap.utils import (
    check_cancelled,
    datastore_path,
    hash_password,
    is_port_open,
    log,
    netmask_to_cidr,
    wait_or_cancel,
)
from vmbootstrap.vcenter import VCenterClient


def best_effort(description: str, func: Callable[..., Any], *args: Any) -> bool:
    """Run ``func``; log a warning instead of raising. Cancellation still propagates."""
    try:
        func(*args)
    except CancelledError:
        raise
    except (BootstrapError, vmodl.MethodFault) as exc:
        log("WARN", f"{description} failed (continuing): {exc}")
        return False
    return True


class CleanupScope:
    """Deletes a partially bootstrapped VM and its uploaded seed unless marked successful."""

    def __init__(self, skip: bool = False):
        self.skip = skip
        self.success = False
        self.vm: Any = None
        self.creator: Optional[VMCreator] = None
        self.transfer: Optional[DatastoreTransfer] = None
        self.seed_datastore = ""
        self.seed_upload_path = ""

    def track_vm(self, vm: Any, creator: VMCreator) -> None:
        self.vm = vm
        self.creator = creator

    def track_seed(self, transfer: DatastoreTransfer, datastore_name: str, upload_path: str) -> None:
        self.transfer = transfer
        self.seed_datastore = datastore_name
        self.seed_upload_path = upload_path

    def release_seed(self) -> None:
        self.seed_upload_path = ""

    def __enter__(self) -> "CleanupScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.success:
            return
        if self.skip:
            log("WARN", "Bootstrap failed; keeping VM and uploaded ISOs for debugging")
            return
        if exc_type is not None and issubclass(exc_type, PowerOnAfterCleanupError):
            log("WARN", f"Installed VM {self.vm.name} is kept powered off; power it on manually")
            return
        self.run()

    def run(self) -> None:
        """Delete tracked artifacts. Runs to completion even after cancellation."""
        log("WARN", "Bootstrap failed; cleaning up")
        if self.transfer is not None and self.seed_upload_path:
            best_effort(
                f"Deleting [{self.seed_datastore}] {self.seed_upload_path}",
                self.transfer.delete_from_datastore,
                self.seed_datastore,
                self.seed_upload_path,
                False,
            )
        if self.creator is not None and self.vm is not None:
            with self.creator.client.detached():
                best_effort(f"Deleting VM {self.vm.name}", self.creator.delete, self.vm)


def resolve_password_hash(cfg: VMConfig) -> str:
    if cfg.password_hash:
        return cfg.password_hash
    if cfg.password:
        return hash_password(cfg.password)
    return "*"


def render_cloud_init(cfg: VMConfig, defaults: LibDefaults) -> Tuple[str, str, str]:
    """Return (user-data, meta-data, network-config) for ``cfg``."""
    generator = CloudInitGenerator()
    ci = defaults.cloudinit
    cidr = netmask_to_cidr(cfg.netmask)
    user_data = generator.generate_user_data(UserDataInput(
        hostname=cfg.name,
        username=cfg.username,
        password_hash=resolve_password_hash(cfg),
        ip_address=cfg.ip_address,
        cidr=cidr,
        gateway=cfg.gateway,
        dns=cfg.dns,
        ssh_public_keys=cfg.ssh_public_keys,
        allow_password_ssh=cfg.allow_password_ssh,
        locale=cfg.locale or ci.locale,
        timezone=cfg.timezone or ci.timezone,
        keyboard_layout=ci.keyboard_layout,
        swap_size_gb=cfg.swap_size_gb if cfg.swap_size_gb is not None else ci.swap_size_gb,
        packages=ci.packages,
        user_groups=ci.user_groups,
        user_shell=ci.user_shell,
        interface_name=cfg.network_interface or defaults.network_interface,
        data_disk_mount_path=cfg.data_disk_mount_path if cfg.data_disk_size_gb else "",
    ))
    meta_data = generator.generate_meta_data(str(uuid.uuid4()), cfg.name)
    network_config = generator.generate_network_config(
        cfg.network_interface or defaults.network_interface,
        cfg.ip_address,
        cidr,
        cfg.gateway,
        cfg.dns,
    )
    return user_data, meta_data, network_config


def verify_ssh_access(ip_address: str, timeouts: Timeouts, cancel: Optional[threading.Event] = None) -> None:
    for attempt in range(1, timeouts.ssh_retries + 1):
        if is_port_open(ip_address, SSH_PORT, timeouts.ssh_connect):
            return
        log("DEBUG", f"SSH port not reachable at {ip_address} (attempt {attempt}/{timeouts.ssh_retries})")
        if attempt < timeouts.ssh_retries:
            wait_or_cancel(cancel, timeouts.ssh_retry_delay)
    raise SSHUnreachableError(f"SSH port {SSH_PORT} not accessible at {ip_address}")


class Bootstrapper:
    """Sequences VM creation, ISO delivery, install monitoring and cleanup.

    Collaborators are created through factories so callers (and tests) can
    substitute them.
    """

    def __init__(
        self,
        defaults: Optional[LibDefaults] = None,
        cancel: Optional[threading.Event] = None,
        client_factory: Optional[Callable[[VCenterCredentials, Optional[threading.Event]], Any]] = None,
        iso_manager_factory: Optional[Callable[[], Any]] = None,
        transfer_factory: Optional[Callable[[Any, VCenterCredentials], Any]] = None,
        check_ssh: Optional[Callable[[str], None]] = None,
        stats_file: Optional[Path] = None,
    ):
        self.defaults = defaults or DEFAULTS
        self.cancel = cancel
        timeouts = self.defaults.timeouts
        self.client_factory = client_factory or VCenterClient
        self.iso_manager_factory = iso_manager_factory or (
            lambda: ISOManager(self.defaults.iso, timeouts, cancel)
        )
        self.transfer_factory = transfer_factory or (
            lambda client, creds: DatastoreTransfer(client, creds, timeouts, cancel)
        )
        self.check_ssh = check_ssh or (lambda ip: verify_ssh_access(ip, timeouts, cancel))
        self.stats_file = stats_file or install_stats.stats_path(self.defaults.iso.cache_dir)

    @property
    def timeouts(self) -> Timeouts:
        return self.defaults.timeouts

    def bootstrap(self, cfg: VMConfig) -> VMHandle:
        set_defaults(cfg, self.defaults)
        validate(cfg)

        client = self.client_factory(cfg.credentials(), self.cancel)
        client.connect()
        try:
            return self._run(client, cfg)
        except vmodl.MethodFault as exc:
            raise HypervisorError(f"vCenter call failed: {getattr(exc, 'msg', None) or exc}")
        finally:
            client.disconnect()

    def _run(self, client: Any, cfg: VMConfig) -> VMHandle:
        if client.find_vm(cfg.datacenter, cfg.name) is not None:
            raise AlreadyExistsError(f"VM '{cfg.name}' already exists in datacenter {cfg.datacenter}")

        folder = client.find_folder(cfg.datacenter, cfg.folder)
        pool = client.find_resource_pool(cfg.datacenter, cfg.resource_pool)
        datastore = client.find_datastore(cfg.datacenter, cfg.datastore)
        iso_datastore = datastore
        if cfg.effective_iso_datastore != cfg.datastore:
            iso_datastore = client.find_datastore(cfg.datacenter, cfg.effective_iso_datastore)
        network = client.find_network(cfg.datacenter, cfg.network_name)

        creator = VMCreator(client, self.defaults.guest_os)
        cdrom = CDROMManager(client, self.timeouts, self.cancel)
        transfer = self.transfer_factory(client, cfg.credentials())

        spec = creator.create_spec(cfg, datastore.name, network)
        # Not interruptible: a VM whose create task was abandoned would never be tracked.
        with client.detached():
            vm = creator.create(folder, pool, spec)

        with CleanupScope(skip=cfg.skip_cleanup_on_error) as scope:
            scope.track_vm(vm, creator)
            check_cancelled(self.cancel)
            if cfg.profile == "talos":
                TalosProvisioner(self.defaults.iso.cache_dir, self.timeouts, self.cancel).provision_and_boot(
                    vm, cfg.os_version, cfg.talos_schematic_id, iso_datastore, transfer, cdrom, creator
                )
                ssh_ready = False
            else:
                self._provision_ubuntu(client, cfg, vm, iso_datastore, transfer, cdrom, creator, scope)
                ssh_ready = self._verify_ssh(cfg)
            scope.success = True

        log("SUCCESS", f"VM {cfg.name} bootstrapped ({cfg.ip_address})")
        return VMHandle(
            name=cfg.name,
            ip_address=cfg.ip_address,
            managed_object=vm,
            hostname=cfg.name,
            ssh_ready=ssh_ready,
            credentials=cfg.credentials(),
        )

    def _provision_ubuntu(
        self,
        client: Any,
        cfg: VMConfig,
        vm: Any,
        iso_datastore: Any,
        transfer: Any,
        cdrom: CDROMManager,
        creator: VMCreator,
        scope: CleanupScope,
    ) -> None:
        user_data, meta_data, network_config = render_cloud_init(cfg, self.defaults)
        log("INFO", "Cloud-init configs generated")

        iso = self.iso_manager_factory()
        ubuntu_iso = iso.download_ubuntu(cfg.os_version)
        ubuntu_iso, _ = iso.modify_ubuntu_iso(ubuntu_iso)
        nocloud_iso = iso.create_nocloud_iso(user_data, meta_data, network_config, cfg.name)

        ubuntu_upload = f"ISO/ubuntu/{ubuntu_iso.name}"
        nocloud_upload = f"ISO/nocloud/{nocloud_iso.name}"
        try:
            transfer.upload_to_datastore(iso_datastore, ubuntu_iso, ubuntu_upload)
            transfer.upload_always(iso_datastore, nocloud_iso, nocloud_upload)
        except (CancelledError, UploadFailedError):
            raise
        except BootstrapError as exc:
            raise UploadFailedError(str(exc))
        scope.track_seed(transfer, iso_datastore.name, nocloud_upload)
        nocloud_iso.unlink(missing_ok=True)

        cdrom.mount_isos(
            vm,
            datastore_path(iso_datastore.name, ubuntu_upload),
            datastore_path(iso_datastore.name, nocloud_upload),
        )
        creator.power_on(vm)
        best_effort("CD-ROM post-boot check", cdrom.ensure_connected_after_boot, vm)

        estimate, samples = install_stats.load_estimate(cfg, self.stats_file)
        if estimate:
            log("INFO", f"Typical install time for this profile: ~{estimate // 60} min ({samples} samples)")
        started = time.monotonic()
        InstallMonitor(client, self.timeouts, self.cancel).wait(vm, cfg.name)
        try:
            install_stats.record_duration(cfg, time.monotonic() - started, self.stats_file)
        except OSError as exc:
            log("DEBUG", f"Could not record install duration: {exc}")

        self._post_install(vm, creator, cdrom, transfer, iso_datastore.name, nocloud_upload, scope)

    def _post_install(
        self,
        vm: Any,
        creator: VMCreator,
        cdrom: CDROMManager,
        transfer: Any,
        datastore_name: str,
        nocloud_upload: str,
        scope: CleanupScope,
    ) -> None:
        """Detach installer media and delete the seed; the VM must end up running."""
        log("INFO", "Installation finished; removing installer media")
        best_effort("Power off", creator.power_off, vm)
        best_effort("Removing CD-ROMs", cdrom.remove_all_cdroms, vm)
        if best_effort(
            f"Deleting [{datastore_name}] {nocloud_upload}",
            transfer.delete_from_datastore,
            datastore_name,
            nocloud_upload,
        ):
            scope.release_seed()
        try:
            creator.power_on(vm)
        except CancelledError:
            raise
        except (BootstrapError, vmodl.MethodFault) as exc:
            raise PowerOnAfterCleanupError(f"failed to power on {vm.name} after cleanup: {exc}")

    def _verify_ssh(self, cfg: VMConfig) -> bool:
        if cfg.skip_ssh_verify:
            log("WARN", "Skipping SSH verification")
            return False
        log("INFO", f"Verifying SSH access to {cfg.ip_address}")
        self.check_ssh(cfg.ip_address)
        log("SUCCESS", "SSH access verified")
        return True


def bootstrap(cfg: VMConfig, cancel: Optional[threading.Event] = None) -> VMHandle:
    """Create ``cfg.name`` and return once it is installed and reachable."""
    return Bootstrapper(cancel=cancel).bootstrap(cfg)
