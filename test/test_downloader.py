"""
Tests for downloading and staging upgrade artifacts.
"""

import hashlib
import os
import stat
import sys
import tarfile
import threading
import time

import pytest
import requests

from fakes import BINARY, FakeResponse, SlowResponse, make_gzip, make_tar, make_tar_with_member, make_zip

from planinfo import (
    ChecksumMismatchError,
    DownloadCancelledError,
    MissingBinaryError,
    UnsupportedArchiveError,
    UpgradeDownloader,
    UpgradeDownloadError,
    VerifierConfig,
    ensure_binary,
)

URL = "https://example.com/simd-v2"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")


def is_executable(path):
    return os.access(path, os.X_OK)


class TestDownloadUpgrade:
    """Test format detection, extraction and binary checks."""

    @pytest.mark.parametrize("compression", ["", "gz", "bz2", "xz"])
    def test_tar_archive(self, downloader, session, tmp_path, compression):
        session.routes[URL] = make_tar({"bin/simd": BINARY, "lib/libfoo.so": b"lib"}, compression)
        dst = tmp_path / "linux-amd64"

        binary = downloader.download_upgrade(dst, URL, "simd")

        assert binary == dst / "bin" / "simd"
        assert binary.read_bytes() == BINARY
        assert (dst / "lib" / "libfoo.so").exists()
        assert is_executable(binary)

    @posix_only
    def test_zip_archive_made_executable(self, downloader, session, tmp_path):
        session.routes[URL] = make_zip({"bin/simd": BINARY})

        binary = downloader.download_upgrade(tmp_path / "any", URL, "simd")

        assert binary == tmp_path / "any" / "bin" / "simd"
        assert binary.stat().st_mode & stat.S_IXUSR

    def test_binary_at_archive_root(self, downloader, session, tmp_path):
        session.routes[URL] = make_zip({"simd": BINARY, "README": b"docs"})
        binary = downloader.download_upgrade(tmp_path, URL, "simd")
        assert binary == tmp_path / "simd"

    def test_binary_nested_in_archive(self, downloader, session, tmp_path):
        session.routes[URL] = make_tar({"simd-v2.0.0/bin/simd": BINARY})
        binary = downloader.download_upgrade(tmp_path, URL, "simd")
        assert binary == tmp_path / "simd-v2.0.0" / "bin" / "simd"

    def test_bare_binary(self, downloader, session, tmp_path):
        session.routes[URL] = BINARY

        binary = downloader.download_upgrade(tmp_path, URL, "simd")

        assert binary == tmp_path / "bin" / "simd"
        assert binary.read_bytes() == BINARY
        assert is_executable(binary)

    def test_gzipped_binary(self, downloader, session, tmp_path):
        session.routes[URL] = make_gzip(BINARY)

        binary = downloader.download_upgrade(tmp_path, URL, "simd")

        assert binary == tmp_path / "bin" / "simd"
        assert binary.read_bytes() == BINARY

    def test_temporary_download_removed(self, downloader, session, tmp_path):
        session.routes[URL] = make_tar({"bin/simd": BINARY})
        downloader.download_upgrade(tmp_path, URL, "simd")
        assert not list(tmp_path.glob(".download-*"))

    def test_missing_binary(self, downloader, session, tmp_path):
        session.routes[URL] = make_tar({"bin/otherd": BINARY})

        with pytest.raises(MissingBinaryError) as exc_info:
            downloader.download_upgrade(tmp_path, URL, "simd")
        assert '"simd"' in str(exc_info.value)
        assert not list(tmp_path.glob(".download-*"))

    def test_name_must_match_exactly(self, downloader, session, tmp_path):
        session.routes[URL] = make_zip({"bin/simd.exe": BINARY, "bin/simd-v2": BINARY})

        with pytest.raises(MissingBinaryError):
            downloader.download_upgrade(tmp_path, URL, "simd")

    def test_directory_with_daemon_name_rejected(self, downloader, session, tmp_path):
        session.routes[URL] = make_zip({"bin/simd/README": b"not a binary"})

        with pytest.raises(MissingBinaryError):
            downloader.download_upgrade(tmp_path, URL, "simd")

    def test_glob_characters_matched_literally(self, downloader, session, tmp_path):
        session.routes[URL] = make_tar({"pkg/simd": BINARY})

        with pytest.raises(MissingBinaryError):
            downloader.download_upgrade(tmp_path / "pattern", URL, "sim[d]")

        session.routes[URL] = make_tar({"pkg/sim[d]": BINARY})
        binary = downloader.download_upgrade(tmp_path / "literal", URL, "sim[d]")
        assert binary == tmp_path / "literal" / "pkg" / "sim[d]"

    @pytest.mark.parametrize("daemon_name", ["bin/simd", "../simd", "..", "."])
    def test_daemon_name_must_be_file_name(self, downloader, session, tmp_path, daemon_name):
        session.routes[URL] = make_tar({"bin/simd": BINARY})

        with pytest.raises(UpgradeDownloadError) as exc_info:
            downloader.download_upgrade(tmp_path, URL, daemon_name)
        assert "daemon name" in str(exc_info.value)
        assert session.requests == []

    def test_plain_tar_ending_with_zip_member(self, downloader, session, tmp_path):
        docs = make_zip({"index.html": b"<html></html>"})
        session.routes[URL] = make_tar({"bin/simd": BINARY, "share/docs.zip": docs}, "")

        binary = downloader.download_upgrade(tmp_path, URL, "simd")

        assert binary == tmp_path / "bin" / "simd"
        assert (tmp_path / "share" / "docs.zip").read_bytes() == docs

    def test_http_error(self, downloader, tmp_path):
        with pytest.raises(UpgradeDownloadError) as exc_info:
            downloader.download_upgrade(tmp_path, URL, "simd")
        assert "404" in str(exc_info.value)

    def test_timeout(self, downloader, session, tmp_path):
        session.routes[URL] = requests.Timeout("read timed out")

        with pytest.raises(UpgradeDownloadError) as exc_info:
            downloader.download_upgrade(tmp_path, URL, "simd")
        assert "timed out" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, requests.Timeout)

    def test_declared_size_over_limit(self, session, tmp_path):
        downloader = UpgradeDownloader(max_download_bytes=100, session=session)
        session.routes[URL] = FakeResponse(b"x", headers={"Content-Length": "5000"}, url=URL)

        with pytest.raises(UpgradeDownloadError) as exc_info:
            downloader.download_upgrade(tmp_path, URL, "simd")
        assert "limit" in str(exc_info.value)

    def test_streamed_size_over_limit(self, session, tmp_path):
        downloader = UpgradeDownloader(max_download_bytes=100, session=session)
        session.routes[URL] = FakeResponse(b"x" * 20000, headers={}, url=URL)

        with pytest.raises(UpgradeDownloadError):
            downloader.download_upgrade(tmp_path, URL, "simd")
        assert not list(tmp_path.glob(".download-*"))

    def test_slow_download_hits_total_timeout(self, session, tmp_path):
        downloader = UpgradeDownloader(connect_timeout=1.0, read_timeout=1.0,
                                       download_timeout=0.2, session=session)
        response = SlowResponse(b"x" * 100, delay=0.05, url=URL)
        session.routes[URL] = response

        start = time.monotonic()
        with pytest.raises(UpgradeDownloadError) as exc_info:
            downloader.download_upgrade(tmp_path, URL, "simd")

        assert "took longer than 0.2 seconds" in str(exc_info.value)
        assert time.monotonic() - start < 2.0
        assert response.sent < 100
        assert not list(tmp_path.glob(".download-*"))

    def test_slow_text_fetch_hits_total_timeout(self, session):
        downloader = UpgradeDownloader(download_timeout=0.2, session=session)
        session.routes[URL] = SlowResponse(b"{}" * 50, delay=0.05, url=URL)

        with pytest.raises(UpgradeDownloadError) as exc_info:
            downloader.fetch_text(URL, max_bytes=1024)
        assert "took longer than" in str(exc_info.value)

    def test_cancelled_download(self, downloader, session, tmp_path):
        session.routes[URL] = make_tar({"bin/simd": BINARY})
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(DownloadCancelledError):
            downloader.download_upgrade(tmp_path, URL, "simd", cancel=cancel)
        assert not (tmp_path / "bin").exists()


class TestChecksums:
    """Test checksum verification of downloads."""

    def test_matching_checksum(self, downloader, session, tmp_path):
        archive = make_tar({"bin/simd": BINARY})
        session.routes[URL] = archive
        digest = hashlib.sha256(archive).hexdigest()

        downloader.download_upgrade(tmp_path, f"{URL}?checksum=sha256:{digest}", "simd")

        assert session.urls == [URL]

    def test_mismatched_checksum(self, downloader, session, tmp_path):
        session.routes[URL] = make_tar({"bin/simd": BINARY})

        with pytest.raises(ChecksumMismatchError):
            downloader.download_upgrade(tmp_path, f"{URL}?checksum=md5:{'0' * 32}", "simd")
        assert not (tmp_path / "bin").exists()

    def test_malformed_checksum(self, downloader, session, tmp_path):
        with pytest.raises(UpgradeDownloadError):
            downloader.download_upgrade(tmp_path, f"{URL}?checksum=sha256:abc", "simd")
        assert session.requests == []


class TestArchiveSafety:
    """Test rejection of archives that would write outside the destination."""

    def test_tar_path_traversal(self, downloader, session, tmp_path):
        session.routes[URL] = make_tar({"../evil": b"x", "bin/simd": BINARY})
        dst = tmp_path / "dst"

        with pytest.raises(UnsupportedArchiveError):
            downloader.download_upgrade(dst, URL, "simd")
        assert not (tmp_path / "evil").exists()

    def test_tar_absolute_path(self, downloader, session, tmp_path):
        session.routes[URL] = make_tar({"/tmp/evil": b"x"})

        with pytest.raises(UnsupportedArchiveError):
            downloader.download_upgrade(tmp_path / "dst", URL, "simd")

    def test_zip_path_traversal(self, downloader, session, tmp_path):
        session.routes[URL] = make_zip({"../../evil": b"x", "bin/simd": BINARY})

        with pytest.raises(UnsupportedArchiveError):
            downloader.download_upgrade(tmp_path / "dst", URL, "simd")

    def test_tar_symlink_escape(self, downloader, session, tmp_path):
        link = tarfile.TarInfo("bin/simd")
        link.type = tarfile.SYMTYPE
        link.linkname = "../../../etc/passwd"
        session.routes[URL] = make_tar_with_member(link)

        with pytest.raises(UnsupportedArchiveError):
            downloader.download_upgrade(tmp_path / "dst", URL, "simd")

    def test_tar_device_file(self, downloader, session, tmp_path):
        device = tarfile.TarInfo("dev/null")
        device.type = tarfile.CHRTYPE
        session.routes[URL] = make_tar_with_member(device)

        with pytest.raises(UnsupportedArchiveError):
            downloader.download_upgrade(tmp_path / "dst", URL, "simd")

    def test_corrupt_gzip(self, downloader, session, tmp_path):
        session.routes[URL] = make_gzip(BINARY)[:-8] + b"garbage!"

        with pytest.raises(UnsupportedArchiveError):
            downloader.download_upgrade(tmp_path, URL, "simd")


class TestEnsureBinary:
    """Test the executable check."""

    def test_missing(self, tmp_path):
        with pytest.raises(MissingBinaryError):
            ensure_binary(tmp_path / "simd")

    def test_directory(self, tmp_path):
        with pytest.raises(MissingBinaryError):
            ensure_binary(tmp_path)

    @posix_only
    def test_adds_execute_bits(self, tmp_path):
        binary = tmp_path / "simd"
        binary.write_bytes(BINARY)
        binary.chmod(0o640)

        ensure_binary(binary)

        assert stat.S_IMODE(binary.stat().st_mode) == 0o751


class TestDetectFormat:

    @pytest.mark.parametrize("content, expected", [
        (make_zip({"a": b"1"}), "zip"),
        (make_tar({"a": b"1"}), "tar"),
        (make_tar({"a": b"1"}, ""), "tar"),
        (make_tar({"a": b"1", "b.zip": make_zip({"c": b"2"})}, ""), "tar"),
        (make_gzip(b"plain"), "gzip"),
        (BINARY, "binary"),
        (b"", "binary"),
    ])
    def test_detect(self, downloader, tmp_path, content, expected):
        path = tmp_path / "download"
        path.write_bytes(content)
        assert downloader.detect_format(path) == expected


def test_from_config(session):
    config = VerifierConfig(daemon_name="simd", connect_timeout=3, read_timeout=7,
                            download_timeout=90, max_download_bytes=42)
    downloader = UpgradeDownloader.from_config(config, session=session)

    assert downloader.timeout == (3.0, 7.0)
    assert downloader.download_timeout == 90.0
    assert downloader.max_download_bytes == 42
    assert downloader.session is session


def test_default_session_user_agent():
    downloader = UpgradeDownloader(user_agent="tester/1.0")
    assert downloader.session.headers["User-Agent"] == "tester/1.0"
