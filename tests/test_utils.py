"""Tests for vmbootstrap.utils module."""

from __future__ import annotations

import hashlib
import io
import threading
from unittest.mock import patch
from urllib.error import HTTPError, URLError

import bcrypt
import pytest

from vmbootstrap.exceptions import BootstrapError, CancelledError, CommandError, DownloadFailedError
from vmbootstrap.utils import (
    check_cancelled,
    cidr_to_netmask,
    datastore_path,
    download_file,
    get_env,
    hash_password,
    is_port_open,
    log,
    netmask_to_cidr,
    run_command,
    sha256_file,
    validate_network_config,
    wait_or_cancel,
)


class FakeResponse(io.BytesIO):
    def __init__(self, body: bytes, status: int = 200, length: bool = True):
        super().__init__(body)
        self.status = status
        self.headers = {"Content-Length": str(len(body))} if length else {}


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_debug_suppressed_by_default(self, capsys):
        with patch("vmbootstrap.constants._LOG_VERBOSE", False):
            log("DEBUG", "should not appear")
        assert capsys.readouterr().out == ""

    def test_debug_shown_when_verbose(self, capsys):
        with patch("vmbootstrap.constants._LOG_VERBOSE", True):
            log("DEBUG", "detail")
        assert "[DEBUG]" in capsys.readouterr().out


class TestGetEnv:
    def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert get_env("TEST_VAR") == "hello"

    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"


class TestHashPassword:
    def test_produces_verifiable_bcrypt_hash(self):
        hashed = hash_password("s3cret")
        assert hashed.startswith("$2")
        assert bcrypt.checkpw(b"s3cret", hashed.encode())


class TestNetmask:
    @pytest.mark.parametrize(
        "netmask, cidr",
        [("255.255.255.0", 24), ("255.255.0.0", 16), ("255.255.255.252", 30), ("0.0.0.0", 0), ("255.255.255.255", 32)],
    )
    def test_netmask_to_cidr(self, netmask, cidr):
        assert netmask_to_cidr(netmask) == cidr

    @pytest.mark.parametrize(
        "netmask", ["255.0.255.0", "300.0.0.0", "abc", "24", "0.0.0.255", "0.0.255.255", ""]
    )
    def test_invalid_netmask(self, netmask):
        with pytest.raises(BootstrapError, match="invalid netmask"):
            netmask_to_cidr(netmask)

    def test_cidr_to_netmask(self):
        assert cidr_to_netmask(24) == "255.255.255.0"
        assert cidr_to_netmask(32) == "255.255.255.255"

    def test_cidr_out_of_range(self):
        with pytest.raises(BootstrapError, match="must be 0-32"):
            cidr_to_netmask(33)


class TestValidateNetworkConfig:
    def test_valid(self):
        validate_network_config("10.0.0.5", "255.255.255.0", "10.0.0.1", ["1.1.1.1"])

    def test_bad_gateway(self):
        with pytest.raises(BootstrapError, match="invalid gateway"):
            validate_network_config("10.0.0.5", "255.255.255.0", "10.0.0", ["1.1.1.1"])

    def test_bad_dns_reports_index(self):
        with pytest.raises(BootstrapError, match="invalid DNS server 2"):
            validate_network_config("10.0.0.5", "255.255.255.0", "10.0.0.1", ["1.1.1.1", "dns"])


class TestSmallHelpers:
    def test_datastore_path(self):
        assert datastore_path("ds1", "/ISO/ubuntu/a.iso") == "[ds1] ISO/ubuntu/a.iso"

    def test_sha256_file(self, tmp_path):
        path = tmp_path / "f.bin"
        path.write_bytes(b"payload")
        assert sha256_file(path) == hashlib.sha256(b"payload").hexdigest()

    def test_is_port_open_false_on_refused(self):
        with patch("vmbootstrap.utils.socket.create_connection", side_effect=ConnectionRefusedError()):
            assert is_port_open("10.0.0.5", 22, 0.1) is False

    def test_check_cancelled(self):
        check_cancelled(None)
        event = threading.Event()
        check_cancelled(event)
        event.set()
        with pytest.raises(CancelledError):
            check_cancelled(event)

    def test_wait_or_cancel_returns_when_not_set(self):
        wait_or_cancel(threading.Event(), 0)

    def test_wait_or_cancel_raises_when_set(self):
        event = threading.Event()
        event.set()
        with pytest.raises(CancelledError):
            wait_or_cancel(event, 10)


class TestRunCommand:
    def test_returns_stdout(self):
        assert run_command(["sh", "-c", "echo hello"]).strip() == "hello"

    def test_nonzero_exit_includes_stderr(self):
        with pytest.raises(CommandError) as exc:
            run_command(["sh", "-c", "echo broken >&2; exit 3"])
        assert exc.value.returncode == 3
        assert "broken" in str(exc.value)

    def test_signal_termination_is_an_error(self):
        with pytest.raises(CommandError) as exc:
            run_command(["sh", "-c", "echo dying >&2; kill -9 $$"])
        assert exc.value.returncode == -9
        assert "dying" in str(exc.value)

    def test_missing_binary(self):
        with pytest.raises(CommandError) as exc:
            run_command(["definitely-not-a-real-binary-xyz"])
        assert exc.value.returncode is None

    def test_cancel_kills_child(self):
        event = threading.Event()
        event.set()
        with pytest.raises(CancelledError):
            run_command(["sleep", "30"], cancel=event)


class TestDownloadFile:
    def test_writes_destination_and_returns_size(self, tmp_path):
        dest = tmp_path / "file.iso"
        with patch("vmbootstrap.utils.urlopen", return_value=FakeResponse(b"x" * 1000)):
            size = download_file("https://example.com/file.iso", dest, progress_interval=0)
        assert size == 1000
        assert dest.read_bytes() == b"x" * 1000
        assert not (tmp_path / "file.iso.part").exists()

    def test_http_error(self, tmp_path):
        error = HTTPError("https://example.com/f", 404, "Not Found", {}, None)
        with patch("vmbootstrap.utils.urlopen", side_effect=error):
            with pytest.raises(DownloadFailedError, match="404"):
                download_file("https://example.com/f", tmp_path / "f")

    def test_url_error(self, tmp_path):
        with patch("vmbootstrap.utils.urlopen", side_effect=URLError("unreachable")):
            with pytest.raises(DownloadFailedError, match="unreachable"):
                download_file("https://example.com/f", tmp_path / "f")

    def test_unexpected_status(self, tmp_path):
        with patch("vmbootstrap.utils.urlopen", return_value=FakeResponse(b"", status=206)):
            with pytest.raises(DownloadFailedError, match="206"):
                download_file("https://example.com/f", tmp_path / "f")

    def test_cancel_removes_partial_file(self, tmp_path):
        event = threading.Event()
        event.set()
        dest = tmp_path / "f.iso"
        with patch("vmbootstrap.utils.urlopen", return_value=FakeResponse(b"data")):
            with pytest.raises(CancelledError):
                download_file("https://example.com/f.iso", dest, cancel=event)
        assert not dest.exists()
        assert not (tmp_path / "f.iso.part").exists()
