#!/usr/bin/env python3
"""Validate ubuntu-releases.yaml: schema, URL reachability and published checksums."""

from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Dict, List, Optional

import requests
import yaml

RELEASES_PATH = Path(__file__).resolve().parents[2] / "vmbootstrap" / "ubuntu-releases.yaml"
URL_RE = re.compile(r"^https://")
SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
REQUEST_TIMEOUT = 30
USER_AGENT = "vmware-vm-bootstrap/release-validator (GitHub Actions)"


def load_releases(path: Path) -> dict:
    with open(path) as f:
        return yaml.safe_load(f)


# ── Phase 1: Schema validation (fail-fast) ──────────────────────────


def validate_schema(data: dict) -> List[str]:
    errors: List[str] = []

    releases = data.get("releases") if isinstance(data, dict) else None
    if not isinstance(releases, dict):
        errors.append("Top-level 'releases' mapping is missing")
        return errors

    for version, entry in releases.items():
        if not isinstance(version, str):
            errors.append(f"[{version}] version key must be quoted (YAML reads it as {type(version).__name__})")
        if not isinstance(entry, dict):
            errors.append(f"[{version}] entry is not a mapping")
            continue

        url = entry.get("url")
        if not isinstance(url, str) or not URL_RE.match(url):
            errors.append(f"[{version}] 'url' must be an https:// string")
        elif not url.endswith(".iso"):
            errors.append(f"[{version}] 'url' must point at an .iso file")

        checksum = entry.get("checksum") or ""
        if checksum and not SHA256_RE.match(str(checksum)):
            errors.append(f"[{version}] 'checksum' must be 64 lowercase hex characters")

    return errors


# ── Phase 2: URL reachability and SHA256SUMS (collect-all) ──────────


def _session() -> requests.Session:
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT
    return session


def check_url(session: requests.Session, version: str, url: str) -> Optional[str]:
    """Return an error string if the URL is unreachable, else None."""
    try:
        resp = session.head(url, timeout=REQUEST_TIMEOUT, allow_redirects=True)
        if resp.status_code < 400:
            return None
        return f"[{version}] HTTP {resp.status_code} for {url}"
    except requests.RequestException as exc:
        return f"[{version}] {exc.__class__.__name__}: {exc} for {url}"


def published_checksums(session: requests.Session, url: str) -> Dict[str, str]:
    """Parse the SHA256SUMS file published next to ``url``."""
    sums_url = url.rsplit("/", 1)[0] + "/SHA256SUMS"
    resp = session.get(sums_url, timeout=REQUEST_TIMEOUT)
    resp.raise_for_status()
    sums: Dict[str, str] = {}
    for line in resp.text.splitlines():
        parts = line.split()
        if len(parts) == 2:
            sums[parts[1].lstrip("*")] = parts[0].lower()
    return sums


def check_checksum(session: requests.Session, version: str, url: str, checksum: str) -> Optional[str]:
    filename = url.rsplit("/", 1)[1]
    try:
        published = published_checksums(session, url).get(filename)
    except requests.RequestException as exc:
        return f"[{version}] cannot fetch SHA256SUMS: {exc}"
    if published is None:
        return f"[{version}] {filename} not listed in SHA256SUMS"
    if published != checksum:
        return f"[{version}] checksum {checksum} does not match published {published}"
    return None


def validate_remote(data: dict) -> List[str]:
    errors: List[str] = []
    session = _session()

    for version, entry in data["releases"].items():
        url = entry["url"]
        err = check_url(session, version, url)
        if err:
            errors.append(err)
            continue
        checksum = entry.get("checksum") or ""
        if checksum:
            err = check_checksum(session, version, url, checksum)
            if err:
                errors.append(err)

    return errors


# ── Main ─────────────────────────────────────────────────────────────


def main() -> int:
    print(f"Loading {RELEASES_PATH}")
    data = load_releases(RELEASES_PATH)

    print("\n=== Phase 1: Schema validation ===")
    schema_errors = validate_schema(data)
    if schema_errors:
        for e in schema_errors:
            print(f"  ERROR: {e}")
        print(f"\nSchema validation failed with {len(schema_errors)} error(s)")
        return 1
    release_count = len(data["releases"])
    print(f"  OK: {release_count} releases, all schemas valid")

    print("\n=== Phase 2: URL reachability and checksums ===")
    remote_errors = validate_remote(data)
    if remote_errors:
        for e in remote_errors:
            print(f"  ERROR: {e}")
        print(f"\nRemote validation failed with {len(remote_errors)} error(s)")
        return 1
    print(f"  OK: all {release_count} ISOs reachable and checksums match")

    print("\nAll checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
