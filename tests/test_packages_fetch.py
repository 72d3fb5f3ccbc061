"""Tests for packages/fetch.py module."""

import hashlib

import httpx
import pytest
import respx

from winpe_imagegen.errors import DownloadError, NetworkError
from winpe_imagegen.packages.fetch import (
    POWERSHELL_DOWNLOAD_BASE,
    DownloadResult,
    build_runtime_url,
    compute_file_sha256,
    download_file,
    runtime_archive_name,
    validate_version,
)

URL = "https://example.com/PowerShell-7.5.0-win-x64.zip"


class TestValidateVersion:
    """Tests for validate_version."""

    @pytest.mark.parametrize("version", ["7.5.0", "7.4.11", "10.0.0"])
    def test_valid(self, version):
        """X.Y.Z versions are accepted unchanged."""
        assert validate_version(version) == version

    @pytest.mark.parametrize("version", ["7.5", "v7.5.0", "7.5.0-rc.1", "", "latest"])
    def test_invalid(self, version):
        """Anything else is rejected."""
        with pytest.raises(ValueError, match="X.Y.Z"):
            validate_version(version)


class TestBuildRuntimeUrl:
    """Tests for release URL discovery."""

    def test_default_url(self):
        """URL follows the official release layout."""
        assert build_runtime_url("7.5.0") == (
            f"{POWERSHELL_DOWNLOAD_BASE}/v7.5.0/PowerShell-7.5.0-win-x64.zip"
        )

    def test_custom_base_and_arch(self):
        """Base URL and architecture are honored."""
        url = build_runtime_url("7.4.6", arch="arm64", base_url="https://mirror.local")
        assert url == "https://mirror.local/v7.4.6/PowerShell-7.4.6-win-arm64.zip"

    def test_archive_name(self):
        """Archive name carries version and architecture."""
        assert runtime_archive_name("7.5.0", "x86") == "PowerShell-7.5.0-win-x86.zip"


class TestComputeFileSha256:
    """Tests for compute_file_sha256."""

    def test_matches_hashlib(self, tmp_path):
        """Chunked hashing equals a one-shot digest."""
        content = b"x" * 200_000
        path = tmp_path / "f.bin"
        path.write_bytes(content)
        assert compute_file_sha256(path, chunk_size=1000) == hashlib.sha256(content).hexdigest()


class TestDownloadFile:
    """Tests for download_file."""

    @respx.mock
    def test_successful_download(self, tmp_path):
        """Should stream the file and hash it."""
        content = b"PK\x03\x04 runtime archive"
        respx.get(URL).mock(return_value=httpx.Response(200, content=content))

        dest_path = tmp_path / "sub" / "runtime.zip"
        with httpx.Client() as client:
            result = download_file(client, URL, dest_path)

        assert isinstance(result, DownloadResult)
        assert dest_path.read_bytes() == content
        assert result.checksum == hashlib.sha256(content).hexdigest()
        assert result.size_bytes == len(content)

    @respx.mock
    @pytest.mark.parametrize("status", [408, 429, 500, 503])
    def test_retryable_status(self, tmp_path, status):
        """Server-side and throttling statuses are transient."""
        respx.get(URL).mock(return_value=httpx.Response(status))

        dest_path = tmp_path / "runtime.zip"
        with httpx.Client() as client, pytest.raises(NetworkError) as exc_info:
            download_file(client, URL, dest_path)

        assert exc_info.value.code == "http_retryable"
        assert not dest_path.exists()

    @respx.mock
    def test_not_found_is_permanent(self, tmp_path):
        """404 is a permanent download error."""
        respx.get(URL).mock(return_value=httpx.Response(404))

        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            download_file(client, URL, tmp_path / "runtime.zip")

        assert exc_info.value.code == "http_error"
        assert "404" in str(exc_info.value)

    @respx.mock
    def test_connection_error(self, tmp_path):
        """Connection failures are transient."""
        respx.get(URL).mock(side_effect=httpx.ConnectError("refused"))

        with httpx.Client() as client, pytest.raises(NetworkError) as exc_info:
            download_file(client, URL, tmp_path / "runtime.zip")

        assert exc_info.value.code == "network_error"

    @respx.mock
    def test_timeout(self, tmp_path):
        """Timeouts are transient."""
        respx.get(URL).mock(side_effect=httpx.ReadTimeout("slow"))

        with httpx.Client() as client, pytest.raises(NetworkError) as exc_info:
            download_file(client, URL, tmp_path / "runtime.zip")

        assert exc_info.value.code == "timeout"
