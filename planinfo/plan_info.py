"""
Upgrade plan info parsing and validation.

A plan-info document tells node operators where to download the upgrade
binary for every platform::

    {"binaries": {"linux/amd64": "https://example.com/simd-linux-amd64.tgz",
                  "any": "https://example.com/simd.zip"}}

The info string of an upgrade plan is either such a document or a URL that
serves one.
"""

import json
import logging
import shutil
import tempfile
import threading
from collections.abc import Mapping
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Optional

from .config import DEFAULT_MAX_PLAN_INFO_BYTES, VerifierConfig
from .downloader import UpgradeDownloader, UpgradeDownloadError, check_daemon_name
from .platforms import ANY_PLATFORM, detect_platform_key, is_valid_platform_key, platform_dir_name
from .urls import parse_url

logger = logging.getLogger("planinfo")

SCRATCH_DIR_PREFIX = "os-arch-downloads-"


class PlanInfoError(Exception):
    """Base exception for plan info operations."""
    pass


class PlanInfoParseError(PlanInfoError):
    """Plan info could not be fetched or decoded."""
    pass


class PlanInfoValidationError(PlanInfoError):
    """Plan info is not valid."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        if len(self.problems) == 1:
            message = self.problems[0]
        else:
            listed = "; ".join(f"{i}) {p}" for i, p in enumerate(self.problems, 1))
            message = f"{len(self.problems)} problems found in plan info: {listed}"
        super().__init__(message)


class ArtifactCheckError(PlanInfoValidationError):
    """The artifact for a platform could not be downloaded or verified."""

    def __init__(self, platform: str, cause: Exception):
        self.platform = platform
        super().__init__([f"error downloading binary for os/arch {platform}: {cause}"])


class BinaryDownloadURLMap(Mapping):
    """Read-only mapping of platform keys to the URL where the binary can be downloaded."""

    def __init__(self, entries: Optional[Mapping[str, str]] = None):
        self._entries = MappingProxyType(dict(entries or {}))

    def __getitem__(self, key: str) -> str:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other) -> bool:
        if isinstance(other, Mapping):
            return dict(self._entries) == dict(other)
        return NotImplemented

    def __hash__(self):
        return hash(frozenset(self._entries.items()))

    def __repr__(self) -> str:
        return f"BinaryDownloadURLMap({dict(self._entries)!r})"

    def validate_basic(self) -> None:
        """
        Stateless validation of this map.

        Checks that:
          * there is at least one entry,
          * every key is "any" or has the format "os/arch",
          * every value is a valid URL.

        All problems are collected and reported together.

        Raises:
            PlanInfoValidationError: If any check fails
        """
        if not self._entries:
            raise PlanInfoValidationError(["no binaries entries found"])

        problems = []
        for key in sorted(self._entries):
            url = self._entries[key]
            if not is_valid_platform_key(key):
                problems.append(f"invalid os/arch format in key \"{key}\"")
            try:
                parse_url(url)
            except ValueError as e:
                problems.append(f"invalid url \"{url}\" in binaries[{key}]: {e}")

        if problems:
            raise PlanInfoValidationError(problems)

    def check_urls(self, daemon_name: str,
                   downloader: Optional[UpgradeDownloader] = None,
                   max_workers: int = 1) -> None:
        """
        Check that every entry's URL serves an artifact containing daemon_name.

        This is expensive: every URL is downloaded (and extracted) into a
        scratch directory that is removed before returning. The first
        failure aborts the check.

        Args:
            daemon_name: Name of the executable expected in every artifact
            downloader: Downloader to use (a default one is created if None)
            max_workers: Number of parallel downloads (1 = sequential)

        Raises:
            ArtifactCheckError: If any artifact fails to download or verify
        """
        if not daemon_name:
            raise PlanInfoValidationError(["daemon name is required to check binaries"])
        try:
            check_daemon_name(daemon_name)
        except ValueError as e:
            raise PlanInfoValidationError([str(e)]) from e
        if downloader is None:
            downloader = UpgradeDownloader()

        scratch_dir = Path(tempfile.mkdtemp(prefix=SCRATCH_DIR_PREFIX))
        logger.debug(f"Created scratch directory {scratch_dir}")
        try:
            jobs = [(key, self._entries[key], scratch_dir / platform_dir_name(key))
                    for key in sorted(self._entries)]
            if max_workers > 1 and len(jobs) > 1:
                self._check_parallel(jobs, daemon_name, downloader, max_workers)
            else:
                for key, url, dst_root in jobs:
                    _check_one(downloader, key, url, dst_root, daemon_name)
        finally:
            shutil.rmtree(scratch_dir, ignore_errors=True)
            logger.debug(f"Removed scratch directory {scratch_dir}")

        logger.info(f"All {len(self._entries)} binaries provide {daemon_name}")

    def _check_parallel(self, jobs, daemon_name: str,
                        downloader: UpgradeDownloader, max_workers: int) -> None:
        cancel = threading.Event()
        with ThreadPoolExecutor(max_workers=min(max_workers, len(jobs))) as executor:
            futures = [executor.submit(_check_one, downloader, key, url, dst_root, daemon_name, cancel)
                       for key, url, dst_root in jobs]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            # First failed platform in key order among the finished downloads.
            failed = [f for f in futures if f in done and f.exception() is not None]
            if failed:
                # Stops downloads still streaming; queued ones never start.
                cancel.set()
                for future in pending:
                    future.cancel()
        if failed:
            raise failed[0].exception()


def _check_one(downloader: UpgradeDownloader, key: str, url: str,
               dst_root: Path, daemon_name: str,
               cancel: Optional[threading.Event] = None) -> None:
    try:
        downloader.download_upgrade(dst_root, url, daemon_name, cancel=cancel)
    except (UpgradeDownloadError, OSError) as e:
        raise ArtifactCheckError(key, e) from e


@dataclass(frozen=True)
class PlanInfo:
    """The structure a plan's info string holds (as JSON)."""
    binaries: BinaryDownloadURLMap = field(default_factory=BinaryDownloadURLMap)

    def __post_init__(self):
        if not isinstance(self.binaries, BinaryDownloadURLMap):
            object.__setattr__(self, "binaries", BinaryDownloadURLMap(self.binaries))

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {"binaries": dict(self.binaries)}

    def to_json(self, indent: Optional[int] = None) -> str:
        """Serialize to the plan-info document format."""
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)

    def url_for_platform(self, os_arch: Optional[str] = None) -> Optional[str]:
        """
        Get the download URL for a platform, falling back to "any".

        Args:
            os_arch: Platform key such as "linux/amd64" (current platform if None)

        Returns:
            The URL, or None if neither the platform nor "any" is listed
        """
        if os_arch is None:
            os_arch = detect_platform_key()
        if os_arch is not None and os_arch in self.binaries:
            return self.binaries[os_arch]
        return self.binaries.get(ANY_PLATFORM)

    def validate_full(self, daemon_name: str,
                      downloader: Optional[UpgradeDownloader] = None,
                      max_workers: int = 1) -> None:
        """
        Do all possible validation of this plan info.

        Runs validate_basic() and, only if that passes, check_urls().
        Warning: this downloads every listed binary.

        Raises:
            PlanInfoValidationError: If either stage fails
        """
        self.binaries.validate_basic()
        self.binaries.check_urls(daemon_name, downloader=downloader, max_workers=max_workers)


def _decode_plan_info(info: str) -> PlanInfo:
    try:
        document = json.loads(info)
    except json.JSONDecodeError as e:
        raise PlanInfoParseError(f"could not parse plan info: {e}") from e

    if not isinstance(document, dict):
        raise PlanInfoParseError(
            f"could not parse plan info: expected a JSON object, got {type(document).__name__}"
        )

    binaries = document.get("binaries")
    if binaries is None:
        binaries = {}
    if not isinstance(binaries, dict):
        raise PlanInfoParseError(
            f"could not parse plan info: \"binaries\" must be an object, got {type(binaries).__name__}"
        )
    for key, url in binaries.items():
        if not isinstance(url, str):
            raise PlanInfoParseError(
                f"could not parse plan info: binaries[{key}] must be a string, got {type(url).__name__}"
            )

    return PlanInfo(BinaryDownloadURLMap(binaries))


def download_plan_info(url: str,
                       downloader: Optional[UpgradeDownloader] = None,
                       max_bytes: Optional[int] = None) -> str:
    """
    Get the contents of the plan-info document at url.

    Raises:
        PlanInfoParseError: If the document cannot be downloaded
    """
    if downloader is None:
        downloader = UpgradeDownloader()
    if max_bytes is None:
        max_bytes = DEFAULT_MAX_PLAN_INFO_BYTES
    try:
        return downloader.fetch_text(url, max_bytes)
    except UpgradeDownloadError as e:
        raise PlanInfoParseError(str(e)) from e


def parse_plan_info(info: str,
                    downloader: Optional[UpgradeDownloader] = None,
                    max_bytes: Optional[int] = None) -> PlanInfo:
    """
    Parse an info string into a PlanInfo.

    If the info string is a URL, a GET request is made to it and the
    response body is parsed instead.

    Args:
        info: Plan-info JSON or a URL serving it
        downloader: Downloader used when info is a URL
        max_bytes: Largest plan-info body accepted from a URL

    Returns:
        The parsed plan info (not yet validated)

    Raises:
        PlanInfoParseError: If fetching or decoding fails
    """
    info = info.strip()

    # A JSON object is never a valid URL: its first path segment holds a colon.
    try:
        parse_url(info)
    except ValueError:
        pass
    else:
        logger.info(f"Plan info looks like a URL, downloading {info}")
        info = download_plan_info(info, downloader=downloader, max_bytes=max_bytes)

    return _decode_plan_info(info)


def validate_upgrade_info(info: str, daemon_name: Optional[str] = None,
                          no_validate: bool = False,
                          config: Optional[VerifierConfig] = None,
                          downloader: Optional[UpgradeDownloader] = None) -> Optional[PlanInfo]:
    """
    Parse and validate an upgrade plan's info string before submitting it.

    Args:
        info: Plan-info JSON or a URL serving it
        daemon_name: Expected executable name (config value if None)
        no_validate: Skip all checks and return None
        config: Verifier settings (defaults if None)
        downloader: Downloader to use (built from config if None)

    Returns:
        The validated plan info, or None when validation was skipped

    Raises:
        PlanInfoError: If parsing or validation fails
    """
    if no_validate:
        logger.warning("Skipping upgrade info validation")
        return None

    if config is None:
        config = VerifierConfig()
    if daemon_name is None:
        daemon_name = config.daemon_name
    if downloader is None:
        downloader = UpgradeDownloader.from_config(config)

    plan = parse_plan_info(info, downloader=downloader, max_bytes=config.max_plan_info_bytes)
    if config.basic_only:
        plan.binaries.validate_basic()
    else:
        plan.validate_full(daemon_name, downloader=downloader, max_workers=config.max_workers)
    return plan
