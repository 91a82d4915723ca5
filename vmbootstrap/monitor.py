"""Detects completion of an unattended install from guest tools telemetry.

The installer boots with VMware Tools running, stops them when it reboots
into the installed system, and the installed system starts them again with
the configured hostname. Some releases finish without a visible reboot, so a
hostname that stays correct for enough consecutive polls is accepted too.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from vmbootstrap.exceptions import InstallTimeoutError
from vmbootstrap.models import GuestReading, InstallPhase, Timeouts
from vmbootstrap.utils import check_cancelled, log, wait_or_cancel
from vmbootstrap.vcenter import VCenterClient


@dataclass
class InstallState:
    phase: InstallPhase = InstallPhase.WAIT_START
    tools_was_running: bool = False
    reboot_detected: bool = False
    hostname_check_count: int = 0

    def observe(self, reading: GuestReading, expected_hostname: str, required_checks: int) -> bool:
        """Apply one poll; return True once the install is complete."""
        running = reading.tools_running

        if self.phase is InstallPhase.WAIT_START:
            if not running:
                return False
            self.tools_was_running = True
            self.phase = InstallPhase.INSTALLING
            log("INFO", "Installation started (VMware Tools running)")
        elif self.phase is InstallPhase.INSTALLING:
            if not running:
                self.reboot_detected = True
                self.tools_was_running = False
                self.hostname_check_count = 0
                self.phase = InstallPhase.REBOOTING
                log("INFO", "VM rebooting (VMware Tools stopped, autoinstall completing)")
                return False
        elif self.phase is InstallPhase.REBOOTING:
            if not running:
                return False
            self.tools_was_running = True
            self.phase = InstallPhase.VERIFYING
            log("INFO", "VMware Tools running again after reboot")
        elif not running:
            self.tools_was_running = False
            self.hostname_check_count = 0
            self.phase = InstallPhase.REBOOTING
            return False

        if reading.hostname != expected_hostname:
            self.hostname_check_count = 0
            return False
        self.hostname_check_count += 1
        log(
            "INFO",
            f"Hostname {reading.hostname} reported ({self.hostname_check_count}/{required_checks}"
            f"{', no reboot seen' if not self.reboot_detected else ''})",
        )
        return self.hostname_check_count >= required_checks


class InstallMonitor:
    def __init__(
        self,
        client: VCenterClient,
        timeouts: Timeouts,
        cancel: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.timeouts = timeouts
        self.cancel = cancel
        self.clock = clock

    def _read(self, vm: Any) -> Optional[GuestReading]:
        try:
            return self.client.read_guest(vm)
        except Exception as exc:
            # Transient property read failures are retried on the next tick.
            log("DEBUG", f"Guest property read failed: {exc}")
            return None

    def wait(self, vm: Any, expected_hostname: str) -> InstallState:
        """Block until the install finishes, the deadline passes or ``cancel`` is set."""
        t = self.timeouts
        deadline = self.clock() + t.installation
        state = InstallState()
        log("INFO", f"Waiting for installation to start (timeout {int(t.installation // 60)} min)")

        while True:
            wait_or_cancel(self.cancel, t.polling)
            check_cancelled(self.cancel)
            if self.clock() > deadline:
                raise InstallTimeoutError(
                    f"installation timeout after {int(t.installation)}s (phase {state.phase.value})"
                )
            reading = self._read(vm)
            if reading is None:
                continue
            if state.observe(reading, expected_hostname, t.hostname_checks):
                log("INFO", f"Installation complete, waiting {int(t.service_startup)}s for services")
                wait_or_cancel(self.cancel, t.service_startup)
                return state
