"""
Upgrade plan-info verification.

Parses the info string of a software upgrade plan, checks that it declares
well-formed platform download URLs and, optionally, downloads every listed
artifact to confirm it provides the expected daemon executable.
"""

__version__ = "1.0.0"

from .config import ConfigurationError, VerifierConfig, default_daemon_name, load_config
from .downloader import (
    ChecksumMismatchError,
    DownloadCancelledError,
    MissingBinaryError,
    UnsupportedArchiveError,
    UpgradeDownloader,
    UpgradeDownloadError,
    ensure_binary,
)
from .plan_info import (
    ArtifactCheckError,
    BinaryDownloadURLMap,
    PlanInfo,
    PlanInfoError,
    PlanInfoParseError,
    PlanInfoValidationError,
    download_plan_info,
    parse_plan_info,
    validate_upgrade_info,
)
from .platforms import ANY_PLATFORM, PlatformDetector, is_valid_platform_key

__all__ = [
    "ANY_PLATFORM",
    "ArtifactCheckError",
    "BinaryDownloadURLMap",
    "ChecksumMismatchError",
    "ConfigurationError",
    "DownloadCancelledError",
    "MissingBinaryError",
    "PlanInfo",
    "PlanInfoError",
    "PlanInfoParseError",
    "PlanInfoValidationError",
    "PlatformDetector",
    "UnsupportedArchiveError",
    "UpgradeDownloadError",
    "UpgradeDownloader",
    "VerifierConfig",
    "default_daemon_name",
    "download_plan_info",
    "ensure_binary",
    "is_valid_platform_key",
    "load_config",
    "parse_plan_info",
    "validate_upgrade_info",
]
