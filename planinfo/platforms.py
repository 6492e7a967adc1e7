"""
Platform keys for upgrade plan-info documents.

A platform key is either the wildcard ``any`` or an ``os/arch`` pair such as
``linux/amd64``. Keys use Go-style operating system and architecture names
because that is what upgrade binaries are published under.
"""

import platform
import re
from typing import Optional, Tuple

ANY_PLATFORM = "any"

_OS_ARCH_RX = re.compile(r"^[a-zA-Z0-9]+/[a-zA-Z0-9]+$")


def is_valid_platform_key(key: str) -> bool:
    """Return True if key is ``any`` or has the ``os/arch`` shape."""
    return key == ANY_PLATFORM or _OS_ARCH_RX.fullmatch(key) is not None


def platform_key(os_name: str, arch: str) -> str:
    """Build an ``os/arch`` platform key."""
    return f"{os_name}/{arch}"


def platform_dir_name(key: str) -> str:
    """Directory name used for a platform's downloads (``linux/amd64`` -> ``linux-amd64``)."""
    return key.replace("/", "-")


class PlatformDetector:
    """Handles robust platform detection across different environments."""

    @staticmethod
    def detect() -> Tuple[str, str]:
        """
        Detects the current platform and architecture.

        Returns:
            Tuple of (os, arch) where:
            - os: "linux", "darwin", "windows" or "freebsd"
            - arch: "amd64", "arm64", "386" or "arm"
        """
        # Detect OS
        system = platform.system().lower()
        if system == "linux":
            os_name = "linux"
        elif system == "darwin":
            os_name = "darwin"
        elif system in ("windows", "win32"):
            os_name = "windows"
        elif system == "freebsd":
            os_name = "freebsd"
        else:
            raise ValueError(f"Unsupported operating system: {system}")

        # Detect architecture
        machine = platform.machine().lower()
        if machine in ("x86_64", "amd64"):
            arch = "amd64"
        elif machine in ("aarch64", "arm64"):
            arch = "arm64"
        elif machine in ("i386", "i686", "x86"):
            arch = "386"
        elif machine.startswith("armv"):
            arch = "arm"
        else:
            raise ValueError(f"Unsupported architecture: {machine}")

        return os_name, arch


def detect_platform_key() -> Optional[str]:
    """
    Detect the current platform and return it as a platform key.

    Returns:
        Platform key like "linux/amd64", or None if the platform is unknown
    """
    try:
        os_name, arch = PlatformDetector.detect()
    except ValueError:
        return None
    return platform_key(os_name, arch)
