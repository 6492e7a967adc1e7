"""
Upgrade artifact downloader.

Downloads an upgrade artifact over HTTP, verifies its optional checksum,
stages it into a destination directory and confirms it provides the
expected executable.

Container formats are detected from file contents rather than URL suffixes:

- ZIP archives and tar archives (plain, gzip, bzip2 or xz) are extracted
  into the destination directory;
- a bare gzip stream is decompressed to ``bin/<daemon_name>``;
- anything else is treated as the binary itself and stored as
  ``bin/<daemon_name>``.
"""

import gzip
import hashlib
import logging
import os
import shutil
import stat
import tarfile
import tempfile
import threading
import time
import zipfile
from pathlib import Path, PurePosixPath
from typing import Iterator, Optional, Tuple, Union

import requests

from .urls import split_checksum

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 60.0
DEFAULT_DOWNLOAD_TIMEOUT = 3600.0
DEFAULT_MAX_DOWNLOAD_BYTES = 2 * 1024 * 1024 * 1024
DEFAULT_USER_AGENT = "upgrade-plan-verifier/1.0"

CHUNK_SIZE = 8192
GZIP_MAGIC = b"\x1f\x8b"


class UpgradeDownloadError(Exception):
    """Base exception for upgrade artifact downloads."""
    pass


class ChecksumMismatchError(UpgradeDownloadError):
    """Downloaded content does not match the checksum in the URL."""
    pass


class UnsupportedArchiveError(UpgradeDownloadError):
    """Archive is unreadable or contains unsafe members."""
    pass


class MissingBinaryError(UpgradeDownloadError):
    """Expected executable is missing or not usable."""
    pass


class DownloadCancelledError(UpgradeDownloadError):
    """Download was stopped because another check already failed."""
    pass


def check_daemon_name(daemon_name: str) -> None:
    """
    Reject daemon names that are not a single file name.

    Raises:
        ValueError: If daemon_name is empty or could address another directory
    """
    if not daemon_name:
        raise ValueError("daemon name is empty")
    if daemon_name in (".", "..") or "/" in daemon_name or os.sep in daemon_name \
            or (os.altsep and os.altsep in daemon_name) or "\x00" in daemon_name:
        raise ValueError(f"invalid daemon name \"{daemon_name}\": must be a plain file name")


def ensure_binary(path: Path) -> None:
    """
    Make sure path is a regular file and executable.

    Execute bits are added when missing.

    Args:
        path: Path to the binary

    Raises:
        MissingBinaryError: If the file does not exist, is not a regular
            file, or cannot be made executable
    """
    try:
        info = path.stat()
    except FileNotFoundError:
        raise MissingBinaryError(f"binary not found at {path}")

    if not stat.S_ISREG(info.st_mode):
        raise MissingBinaryError(f"{path} is not a regular file")

    try:
        path.chmod(info.st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as e:
        raise MissingBinaryError(f"could not make {path} executable: {e}") from e

    if not os.access(path, os.X_OK):
        raise MissingBinaryError(f"{path} is not executable")


def find_binary(dst_root: Path, daemon_name: str) -> Optional[Path]:
    """
    Find the daemon executable inside a staged artifact.

    ``bin/<daemon_name>`` wins, then ``<daemon_name>`` at the root, then the
    first file anywhere below dst_root whose name is exactly daemon_name.
    """
    for candidate in (dst_root / "bin" / daemon_name, dst_root / daemon_name):
        if candidate.is_file():
            return candidate

    # Names are compared literally; daemon_name is never a glob pattern.
    for candidate in sorted(dst_root.rglob("*")):
        if candidate.name == daemon_name and candidate.is_file():
            return candidate

    return None


def _is_within(root: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


def _check_member_name(root: Path, name: str) -> None:
    member = PurePosixPath(name)
    if member.is_absolute() or ".." in member.parts or not _is_within(root, root / name):
        raise UnsupportedArchiveError(f"unsafe archive member path: {name}")


class UpgradeDownloader:
    """
    Downloads upgrade artifacts and checks that they contain the daemon binary.

    A single instance may be shared by concurrent artifact checks; every
    call works on its own destination directory.
    """

    def __init__(self,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 read_timeout: float = DEFAULT_READ_TIMEOUT,
                 max_download_bytes: int = DEFAULT_MAX_DOWNLOAD_BYTES,
                 user_agent: str = DEFAULT_USER_AGENT,
                 session: Optional[requests.Session] = None,
                 download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT):
        """
        Initialize the downloader.

        Args:
            connect_timeout: Seconds to wait for a connection
            read_timeout: Seconds to wait between received bytes
            max_download_bytes: Largest artifact accepted
            user_agent: User-Agent header sent with every request
            session: HTTP session to use (a new one is created if None)
            download_timeout: Total seconds allowed for one download
        """
        self.timeout = (connect_timeout, read_timeout)
        self.download_timeout = download_timeout
        self.max_download_bytes = max_download_bytes
        self.logger = logging.getLogger("upgrade-downloader")

        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = user_agent
        self.session = session

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> "UpgradeDownloader":
        """Create a downloader from a VerifierConfig."""
        return cls(
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            max_download_bytes=config.max_download_bytes,
            user_agent=config.user_agent,
            session=session,
            download_timeout=config.download_timeout,
        )

    def _open(self, url: str) -> requests.Response:
        try:
            response = self.session.get(url, stream=True, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise UpgradeDownloadError(f"could not download url \"{url}\": {e}") from e
        return response

    def _check_declared_size(self, response: requests.Response, url: str, limit: int) -> None:
        declared = response.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise UpgradeDownloadError(
                f"content at \"{url}\" is {int(declared):,} bytes, limit is {limit:,} bytes"
            )

    def _split_checksum(self, url: str) -> Tuple[str, Optional[Tuple[str, str]]]:
        try:
            return split_checksum(url)
        except ValueError as e:
            raise UpgradeDownloadError(f"invalid url \"{url}\": {e}") from e

    def _verify_checksum(self, url: str, checksum: Tuple[str, str], actual: str) -> None:
        algorithm, expected = checksum
        if actual.lower() != expected:
            raise ChecksumMismatchError(
                f"checksums did not match for \"{url}\": expected {algorithm}:{expected}, "
                f"got {algorithm}:{actual}"
            )
        self.logger.debug(f"Checksum verification passed: {algorithm}:{actual}")

    def _iter_body(self, response: requests.Response, url: str, deadline: float,
                   cancel: Optional[threading.Event] = None) -> Iterator[bytes]:
        """Yield response chunks until the body ends, the deadline passes or cancel is set."""
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if cancel is not None and cancel.is_set():
                    raise DownloadCancelledError(f"download of \"{url}\" cancelled")
                if time.monotonic() > deadline:
                    raise UpgradeDownloadError(
                        f"could not download url \"{url}\": took longer than "
                        f"{self.download_timeout:g} seconds"
                    )
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise UpgradeDownloadError(f"could not download url \"{url}\": {e}") from e

    def fetch_text(self, url: str, max_bytes: int) -> str:
        """
        Fetch a small text document into memory.

        Args:
            url: URL to fetch, optionally with a checksum parameter
            max_bytes: Largest body accepted

        Returns:
            The decoded response body

        Raises:
            UpgradeDownloadError: If the download fails or the body is too
                large, not UTF-8, or fails checksum verification
        """
        fetch_url, checksum = self._split_checksum(url)
        self.logger.info(f"Fetching {fetch_url}")

        deadline = time.monotonic() + self.download_timeout
        body = bytearray()
        with self._open(fetch_url) as response:
            self._check_declared_size(response, fetch_url, max_bytes)
            for chunk in self._iter_body(response, fetch_url, deadline):
                body.extend(chunk)
                if len(body) > max_bytes:
                    raise UpgradeDownloadError(
                        f"content at \"{fetch_url}\" exceeds limit of {max_bytes:,} bytes"
                    )

        if checksum:
            self._verify_checksum(fetch_url, checksum, hashlib.new(checksum[0], bytes(body)).hexdigest())

        try:
            return bytes(body).decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise UpgradeDownloadError(f"content at \"{fetch_url}\" is not UTF-8 text: {e}") from e

    def download_file(self, url: str, output_path: Path,
                      cancel: Optional[threading.Event] = None) -> None:
        """
        Stream url into output_path, verifying its checksum parameter if present.

        Args:
            url: URL to download, optionally with a checksum parameter
            output_path: File to write
            cancel: Event that stops the download between chunks when set

        Raises:
            UpgradeDownloadError: If the download fails, is too large or
                exceeds the download timeout
            DownloadCancelledError: If cancel was set
            ChecksumMismatchError: If the checksum does not match
        """
        fetch_url, checksum = self._split_checksum(url)
        hash_obj = hashlib.new(checksum[0]) if checksum else None
        self.logger.info(f"Downloading {fetch_url}")

        deadline = time.monotonic() + self.download_timeout
        downloaded = 0
        with self._open(fetch_url) as response:
            self._check_declared_size(response, fetch_url, self.max_download_bytes)
            with open(output_path, "wb") as f:
                for chunk in self._iter_body(response, fetch_url, deadline, cancel):
                    downloaded += len(chunk)
                    if downloaded > self.max_download_bytes:
                        raise UpgradeDownloadError(
                            f"content at \"{fetch_url}\" exceeds limit of "
                            f"{self.max_download_bytes:,} bytes"
                        )
                    f.write(chunk)
                    if hash_obj:
                        hash_obj.update(chunk)

        self.logger.debug(f"Downloaded {downloaded:,} bytes to {output_path}")
        if checksum:
            self._verify_checksum(fetch_url, checksum, hash_obj.hexdigest())

    def detect_format(self, path: Path) -> str:
        """
        Detect the container format of a downloaded file.

        Returns:
            One of "zip", "tar", "gzip" or "binary"
        """
        # Tar goes first: is_zipfile also matches a tar whose last member is a zip.
        try:
            if tarfile.is_tarfile(path):
                return "tar"
        except (OSError, EOFError, tarfile.TarError):
            pass
        if zipfile.is_zipfile(path):
            return "zip"
        with open(path, "rb") as f:
            if f.read(2) == GZIP_MAGIC:
                return "gzip"
        return "binary"

    def _extract_zip(self, archive_path: Path, dst_root: Path) -> None:
        try:
            with zipfile.ZipFile(archive_path, "r") as zip_ref:
                for name in zip_ref.namelist():
                    _check_member_name(dst_root, name)
                zip_ref.extractall(dst_root)
        except (zipfile.BadZipFile, OSError) as e:
            raise UnsupportedArchiveError(f"could not extract zip archive: {e}") from e

    def _extract_tar(self, archive_path: Path, dst_root: Path) -> None:
        try:
            with tarfile.open(archive_path, "r:*") as tar_ref:
                for member in tar_ref.getmembers():
                    _check_member_name(dst_root, member.name)
                    if member.issym():
                        target = (dst_root / member.name).parent / member.linkname
                        if PurePosixPath(member.linkname).is_absolute() or not _is_within(dst_root, target):
                            raise UnsupportedArchiveError(
                                f"archive link escapes destination: {member.name} -> {member.linkname}"
                            )
                    elif member.islnk():
                        _check_member_name(dst_root, member.linkname)
                    elif member.isdev():
                        raise UnsupportedArchiveError(f"archive contains device file: {member.name}")
                if hasattr(tarfile, "data_filter"):
                    tar_ref.extractall(dst_root, filter="data")
                else:
                    tar_ref.extractall(dst_root)
        except (tarfile.TarError, EOFError, OSError) as e:
            raise UnsupportedArchiveError(f"could not extract tar archive: {e}") from e

    def _decompress_gzip(self, archive_path: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with gzip.open(archive_path, "rb") as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
        except (OSError, EOFError) as e:
            raise UnsupportedArchiveError(f"could not decompress gzip file: {e}") from e

    def stage(self, download_path: Path, dst_root: Path, daemon_name: str) -> Path:
        """
        Stage a downloaded file into dst_root and locate the daemon binary.

        Returns:
            Path to the (executable) daemon binary
        """
        kind = self.detect_format(download_path)
        self.logger.debug(f"Detected {kind} content in {download_path.name}")
        bin_path = dst_root / "bin" / daemon_name

        if kind == "zip":
            self.logger.info(f"Extracting zip archive to {dst_root}")
            self._extract_zip(download_path, dst_root)
        elif kind == "tar":
            self.logger.info(f"Extracting tar archive to {dst_root}")
            self._extract_tar(download_path, dst_root)
        elif kind == "gzip":
            self._decompress_gzip(download_path, bin_path)
        else:
            bin_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(download_path), str(bin_path))

        binary = find_binary(dst_root, daemon_name)
        if binary is None:
            raise MissingBinaryError(f"no file named \"{daemon_name}\" found in downloaded artifact")
        ensure_binary(binary)
        return binary

    def download_upgrade(self, dst_root: Union[str, Path], url: str, daemon_name: str,
                         cancel: Optional[threading.Event] = None) -> Path:
        """
        Download an upgrade artifact and check that it provides daemon_name.

        Args:
            dst_root: Directory to stage the artifact into (created if needed)
            url: Artifact URL, optionally with a ``checksum=<algo>:<hex>`` parameter
            daemon_name: Name of the executable the artifact must contain
            cancel: Event that aborts the download when set

        Returns:
            Path to the staged executable

        Raises:
            UpgradeDownloadError: If any step fails
        """
        try:
            check_daemon_name(daemon_name)
        except ValueError as e:
            raise UpgradeDownloadError(str(e)) from e

        dst_root = Path(dst_root)
        dst_root.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=".download-", dir=dst_root)
        os.close(fd)
        download_path = Path(tmp_name)
        try:
            self.download_file(url, download_path, cancel=cancel)
            binary = self.stage(download_path, dst_root, daemon_name)
        finally:
            download_path.unlink(missing_ok=True)

        self.logger.info(f"Verified {daemon_name} at {binary}")
        return binary
