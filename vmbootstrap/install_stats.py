"""Median install durations per profile/version/size, used for ETA logging."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

from vmbootstrap.constants import INSTALL_STATS_FILE, INSTALL_STATS_MAX_SAMPLES
from vmbootstrap.models import VMConfig
from vmbootstrap.utils import ensure_directory, get_env


def stats_path(cache_dir: Path) -> Path:
    override = get_env("VMBOOTSTRAP_INSTALL_STATS")
    if override:
        return Path(override).expanduser()
    return cache_dir / INSTALL_STATS_FILE


def stats_key(cfg: VMConfig) -> str:
    profile = (cfg.profile or "").strip() or "unknown"
    version = (cfg.os_version or "").strip() or "unknown"
    return f"{profile}-{version}_cpu-{cfg.cpus}_mem-{cfg.memory_mb}"


def _load(path: Path) -> dict:
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError):
        return {"profiles": {}}
    if not isinstance(data, dict) or not isinstance(data.get("profiles"), dict):
        return {"profiles": {}}
    return data


def load_estimate(cfg: VMConfig, path: Path) -> Tuple[Optional[int], int]:
    """Return (median seconds, sample count) for ``cfg``, or (None, 0)."""
    samples = _load(path)["profiles"].get(stats_key(cfg), {}).get("samples_sec") or []
    if not samples:
        return None, 0
    ordered = sorted(int(s) for s in samples)
    median = ordered[len(ordered) // 2]
    if median <= 0:
        return None, 0
    return median, len(samples)


def record_duration(cfg: VMConfig, seconds: float, path: Path) -> None:
    if seconds <= 0:
        return
    ensure_directory(path.parent)
    data = _load(path)
    profile = data["profiles"].setdefault(stats_key(cfg), {})
    samples = list(profile.get("samples_sec") or [])
    samples.append(int(round(seconds)))
    profile["samples_sec"] = samples[-INSTALL_STATS_MAX_SAMPLES:]
    profile["updated_at"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    path.write_text(json.dumps(data, indent=2))
