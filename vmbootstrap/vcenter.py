"""pyVmomi client wrapper: connection, inventory lookup, tasks and VM operations."""

from __future__ import annotations

import ssl
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim, vmodl

from vmbootstrap.constants import TASK_POLL_SECONDS
from vmbootstrap.exceptions import HypervisorError, HypervisorUnreachableError, UploadFailedError
from vmbootstrap.models import GuestReading, VCenterCredentials
from vmbootstrap.utils import check_cancelled, datastore_path, log, wait_or_cancel


def get_parent_name(obj: Any, parent_type: type) -> str:
    """Walk up the parent chain to find the name of a given parent type."""
    current = getattr(obj, "parent", None)
    while current:
        if isinstance(current, parent_type):
            return current.name
        current = getattr(current, "parent", None)
    return ""


class VCenterClient:
    """Thin layer over a pyVmomi ServiceInstance.

    Every mutating call waits for its task, so effects are visible to the
    next caller. ``cancel`` interrupts task waits between polls.
    """

    def __init__(self, credentials: VCenterCredentials, cancel: Optional[threading.Event] = None):
        self.credentials = credentials
        self.cancel = cancel
        self.si: Any = None
        self.content: Any = None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if self.credentials.insecure:
            return ssl._create_unverified_context()
        return None

    def connect(self) -> "VCenterClient":
        creds = self.credentials
        log("INFO", f"Connecting to vCenter {creds.host}:{creds.port} as {creds.username}")
        try:
            self.si = SmartConnect(
                host=creds.host,
                user=creds.username,
                pwd=creds.password,
                port=creds.port,
                sslContext=self._ssl_context(),
            )
        except vim.fault.InvalidLogin as exc:
            raise HypervisorUnreachableError(f"vCenter login failed for {creds.username}: {exc.msg}")
        except (vmodl.MethodFault, OSError) as exc:
            raise HypervisorUnreachableError(f"Failed to connect to vCenter {creds.host}: {exc}")
        self.content = self.si.RetrieveContent()
        log("DEBUG", f"Connected, API version {self.content.about.apiVersion}")
        return self

    def disconnect(self) -> None:
        if self.si is not None:
            try:
                Disconnect(self.si)
            except (vmodl.MethodFault, OSError) as exc:
                log("DEBUG", f"Disconnect failed: {exc}")
            self.si = None
            self.content = None

    def __enter__(self) -> "VCenterClient":
        if self.si is None:
            self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()

    @contextmanager
    def detached(self) -> Iterator["VCenterClient"]:
        """Ignore the cancellation event for the duration of the block."""
        cancel, self.cancel = self.cancel, None
        try:
            yield self
        finally:
            self.cancel = cancel

    # ------------------------------------------------------------------
    # Inventory lookup
    # ------------------------------------------------------------------

    def _get_all_objects(self, vimtypes: List[type], folder: Any = None) -> List[Any]:
        container = self.content.viewManager.CreateContainerView(
            folder or self.content.rootFolder, vimtypes, True
        )
        try:
            return list(container.view)
        finally:
            container.Destroy()

    def _find_by_name(self, vimtypes: List[type], name: str, folder: Any = None) -> Optional[Any]:
        for obj in self._get_all_objects(vimtypes, folder):
            if obj.name == name:
                return obj
        return None

    def find_datacenter(self, name: str) -> Any:
        dc = self._find_by_name([vim.Datacenter], name)
        if dc is None:
            raise HypervisorError(f"datacenter not found: {name}")
        return dc

    def find_vm(self, datacenter: str, name: str) -> Optional[Any]:
        dc = self.find_datacenter(datacenter)
        return self._find_by_name([vim.VirtualMachine], name, dc.vmFolder)

    def find_folder(self, datacenter: str, path: str) -> Any:
        """Resolve a VM folder path relative to the datacenter's VM folder."""
        dc = self.find_datacenter(datacenter)
        folder = dc.vmFolder
        for part in [p for p in path.strip("/").split("/") if p]:
            child = next(
                (c for c in folder.childEntity if isinstance(c, vim.Folder) and c.name == part),
                None,
            )
            if child is None:
                raise HypervisorError(f"folder not found: {path}")
            folder = child
        return folder

    def find_resource_pool(self, datacenter: str, path: str) -> Any:
        """Resolve a resource pool by path; empty means the first cluster's root pool."""
        dc = self.find_datacenter(datacenter)
        if not path:
            for compute in self._get_all_objects([vim.ComputeResource], dc.hostFolder):
                if compute.resourcePool is not None:
                    return compute.resourcePool
            raise HypervisorError(f"no compute resource found in datacenter {datacenter}")

        parts = [p for p in path.strip("/").split("/") if p]
        for pool in self._get_all_objects([vim.ResourcePool], dc.hostFolder):
            if pool.name != parts[-1]:
                continue
            if len(parts) == 1 or self._pool_path_matches(pool, parts):
                return pool
        raise HypervisorError(f"resource pool not found: {path}")

    @staticmethod
    def _pool_path_matches(pool: Any, parts: List[str]) -> bool:
        names = []
        current = pool
        while current is not None and not isinstance(current, vim.Datacenter):
            names.append(current.name)
            current = getattr(current, "parent", None)
        names.reverse()
        return names[-len(parts):] == parts

    def find_datastore(self, datacenter: str, name: str) -> Any:
        dc = self.find_datacenter(datacenter)
        ds = self._find_by_name([vim.Datastore], name, dc.datastoreFolder)
        if ds is None:
            raise HypervisorError(f"datastore not found: {name}")
        return ds

    def find_network(self, datacenter: str, name: str) -> Any:
        dc = self.find_datacenter(datacenter)
        net = self._find_by_name([vim.Network], name, dc.networkFolder)
        if net is None:
            raise HypervisorError(f"network not found: {name}")
        return net

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def wait_for_task(self, task: Any, description: str) -> Any:
        """Poll ``task`` until it finishes; return its result or raise HypervisorError."""
        while True:
            check_cancelled(self.cancel)
            info = task.info
            if info.state == vim.TaskInfo.State.success:
                return info.result
            if info.state == vim.TaskInfo.State.error:
                fault = info.error
                message = getattr(fault, "msg", None) or str(fault)
                raise HypervisorError(f"{description} failed: {message}", fault=fault)
            wait_or_cancel(self.cancel, TASK_POLL_SECONDS)

    # ------------------------------------------------------------------
    # VM operations
    # ------------------------------------------------------------------

    def create_vm(self, folder: Any, pool: Any, spec: Any) -> Any:
        task = folder.CreateVM_Task(config=spec, pool=pool)
        return self.wait_for_task(task, f"create VM {spec.name}")

    def get_devices(self, vm: Any) -> List[Any]:
        return list(vm.config.hardware.device)

    def reconfigure(self, vm: Any, device_changes: List[Any], description: str = "reconfigure VM") -> None:
        spec = vim.vm.ConfigSpec(deviceChange=device_changes)
        self.wait_for_task(vm.ReconfigVM_Task(spec=spec), description)

    def power_state(self, vm: Any) -> str:
        return vm.runtime.powerState

    def power_on(self, vm: Any) -> None:
        if self.power_state(vm) == vim.VirtualMachinePowerState.poweredOn:
            return
        self.wait_for_task(vm.PowerOnVM_Task(), f"power on {vm.name}")

    def power_off(self, vm: Any) -> None:
        if self.power_state(vm) == vim.VirtualMachinePowerState.poweredOff:
            return
        self.wait_for_task(vm.PowerOffVM_Task(), f"power off {vm.name}")

    def destroy(self, vm: Any) -> None:
        self.power_off(vm)
        self.wait_for_task(vm.Destroy_Task(), f"delete {vm.name}")

    def read_guest(self, vm: Any) -> Optional[GuestReading]:
        """Return the guest tools status and hostname, or None if not reported."""
        guest = vm.guest
        if guest is None:
            return None
        return GuestReading(
            tools_running=guest.toolsRunningStatus == "guestToolsRunning",
            hostname=guest.hostName or "",
        )

    # ------------------------------------------------------------------
    # Datastore
    # ------------------------------------------------------------------

    def datastore_file_exists(self, datastore: Any, remote_path: str) -> bool:
        folder, _, filename = remote_path.strip("/").rpartition("/")
        search_root = datastore_path(datastore.name, folder) if folder else f"[{datastore.name}]"
        spec = vim.host.DatastoreBrowser.SearchSpec(matchPattern=[filename])
        try:
            task = datastore.browser.SearchDatastore_Task(datastorePath=search_root, searchSpec=spec)
            result = self.wait_for_task(task, f"search {search_root}")
        except vim.fault.FileNotFound:
            return False
        except HypervisorError as exc:
            if isinstance(exc.fault, vim.fault.FileNotFound):
                return False
            raise
        return bool(result is not None and result.file)

    def upload_file(self, datastore: Any, local_path: Path, remote_path: str) -> None:
        """PUT a local file to the datastore through the vCenter /folder endpoint."""
        creds = self.credentials
        params = urlencode({
            "dcPath": get_parent_name(datastore, vim.Datacenter),
            "dsName": datastore.name,
        })
        url = f"https://{creds.host}:{creds.port}/folder/{quote(remote_path.lstrip('/'))}?{params}"
        size = local_path.stat().st_size
        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Length": str(size),
            "Cookie": self.si._stub.cookie,
        }
        log("DEBUG", f"PUT {url} ({size} bytes)")
        with local_path.open("rb") as handle:
            req = Request(url, data=handle, headers=headers, method="PUT")
            try:
                with urlopen(req, context=self._ssl_context()) as response:
                    status = getattr(response, "status", 200)
            except HTTPError as exc:
                raise UploadFailedError(f"HTTP error uploading {local_path.name}: {exc.code} {exc.reason}")
            except URLError as exc:
                raise UploadFailedError(f"Failed to upload {local_path.name}: {exc.reason}")
        if status not in (200, 201):
            raise UploadFailedError(f"Failed to upload {local_path.name}: unexpected status {status}")
