"""Datastore transfer: change-detected ISO uploads, seed uploads and deletes."""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from vmbootstrap.constants import UPLOADED_HASH_SUFFIX
from vmbootstrap.exceptions import BootstrapError, CancelledError, UploadFailedError
from vmbootstrap.models import Timeouts, VCenterCredentials
from vmbootstrap.utils import Heartbeat, log, run_command, sha256_file
from vmbootstrap.vcenter import VCenterClient


def uploaded_hash_path(local_path: Path) -> Path:
    return local_path.with_name(local_path.name + UPLOADED_HASH_SUFFIX)


def read_uploaded_hash(local_path: Path) -> str:
    sidecar = uploaded_hash_path(local_path)
    if not sidecar.exists():
        return ""
    return sidecar.read_text().strip()


def write_uploaded_hash(local_path: Path, digest: str) -> None:
    uploaded_hash_path(local_path).write_text(digest)


def govc_env(credentials: VCenterCredentials) -> Dict[str, str]:
    env = dict(os.environ)
    env.update(credentials.govc_env())
    return env


class GovcUploader:
    """Streams files with ``govc datastore.upload``."""

    name = "govc"

    def __init__(
        self,
        credentials: VCenterCredentials,
        timeouts: Timeouts,
        cancel: Optional[threading.Event] = None,
        binary: str = "govc",
    ):
        self.credentials = credentials
        self.timeouts = timeouts
        self.cancel = cancel
        self.binary = binary

    def upload(self, datastore: Any, local_path: Path, remote_path: str) -> None:
        cmd = [self.binary, "datastore.upload", "-ds", datastore.name, str(local_path), remote_path]
        run_command(
            cmd,
            env=govc_env(self.credentials),
            cancel=self.cancel,
            heartbeat=f"Uploading {local_path.name}",
            heartbeat_interval=self.timeouts.upload_progress,
        )


class LibraryUploader:
    """Uploads through the vCenter HTTP file endpoint using the API session."""

    name = "vcenter-http"

    def __init__(self, client: VCenterClient, timeouts: Timeouts):
        self.client = client
        self.timeouts = timeouts

    def upload(self, datastore: Any, local_path: Path, remote_path: str) -> None:
        with Heartbeat(f"Uploading {local_path.name}", self.timeouts.upload_progress):
            self.client.upload_file(datastore, local_path, remote_path)


class DatastoreTransfer:
    """Uploads ISOs to a datastore, trying each uploader in order."""

    def __init__(
        self,
        client: VCenterClient,
        credentials: VCenterCredentials,
        timeouts: Timeouts,
        cancel: Optional[threading.Event] = None,
        uploaders: Optional[Sequence[Any]] = None,
        govc_binary: str = "govc",
    ):
        self.client = client
        self.credentials = credentials
        self.timeouts = timeouts
        self.cancel = cancel
        self.govc_binary = govc_binary
        if uploaders is None:
            uploaders = [
                GovcUploader(credentials, timeouts, cancel, govc_binary),
                LibraryUploader(client, timeouts),
            ]
        self.uploaders = list(uploaders)

    def file_exists(self, datastore: Any, remote_path: str) -> bool:
        return self.client.datastore_file_exists(datastore, remote_path)

    def upload_to_datastore(self, datastore: Any, local_path: Path, remote_path: str) -> bool:
        """Upload unless the remote copy matches the last uploaded hash.

        Returns True when bytes were transferred, False when skipped.
        """
        exists = self.file_exists(datastore, remote_path)
        local_hash = sha256_file(local_path)
        if exists and local_hash == read_uploaded_hash(local_path):
            log("INFO", f"[{datastore.name}] {remote_path} is up to date; skipping upload")
            return False
        if exists:
            log("INFO", f"[{datastore.name}] {remote_path} changed locally; re-uploading")
        self._upload(datastore, local_path, remote_path)
        write_uploaded_hash(local_path, local_hash)
        return True

    def upload_always(self, datastore: Any, local_path: Path, remote_path: str) -> None:
        self._upload(datastore, local_path, remote_path)

    def _upload(self, datastore: Any, local_path: Path, remote_path: str) -> None:
        size_mb = local_path.stat().st_size / (1024 * 1024)
        log("INFO", f"Uploading {local_path.name} ({size_mb:.1f} MiB) to [{datastore.name}] {remote_path}")
        errors: List[str] = []
        for uploader in self.uploaders:
            try:
                uploader.upload(datastore, local_path, remote_path)
            except CancelledError:
                raise
            except BootstrapError as exc:
                errors.append(f"{uploader.name}: {exc}")
                log("WARN", f"Upload via {uploader.name} failed: {exc}")
                continue
            log("SUCCESS", f"Uploaded {local_path.name} via {uploader.name}")
            return
        raise UploadFailedError(f"failed to upload {local_path.name}: " + "; ".join(errors))

    def delete_from_datastore(self, datastore_name: str, remote_path: str, cancellable: bool = True) -> None:
        cmd = [self.govc_binary, "datastore.rm", "-ds", datastore_name, remote_path]
        run_command(cmd, env=govc_env(self.credentials), cancel=self.cancel if cancellable else None)
        log("INFO", f"Deleted [{datastore_name}] {remote_path}")
