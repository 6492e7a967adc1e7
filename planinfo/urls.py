"""
URL syntax checks shared by the plan-info parser, the basic validator and
the upgrade downloader.
"""

import hashlib
import string
from typing import Optional, Tuple
from urllib.parse import SplitResult, parse_qsl, urlencode, urlsplit, urlunsplit

CHECKSUM_PARAM = "checksum"
SUPPORTED_CHECKSUMS = ("md5", "sha1", "sha256", "sha512")

_SCHEME_CHARS = string.ascii_letters + string.digits + "+-."


def _split_scheme(raw: str) -> Tuple[str, str]:
    """Split a leading ``scheme:`` off raw, returning ("", raw) when there is none."""
    for i, ch in enumerate(raw):
        if ch in string.ascii_letters:
            continue
        if ch in _SCHEME_CHARS:
            if i == 0:
                return "", raw
            continue
        if ch == ":":
            if i == 0:
                raise ValueError("missing protocol scheme")
            return raw[:i], raw[i + 1:]
        return "", raw
    return "", raw


def _check_escapes(raw: str) -> None:
    i = raw.find("%")
    while i != -1:
        escape = raw[i + 1:i + 3]
        if len(escape) != 2 or any(c not in string.hexdigits for c in escape):
            raise ValueError(f"invalid URL escape \"%{escape}\"")
        i = raw.find("%", i + 3)


def parse_url(raw: str) -> SplitResult:
    """
    Parse raw as a URL, rejecting strings that are not syntactically valid.

    Relative references such as ``downloads/app.tgz`` are accepted, as are
    spaces in the path. This only checks syntax, not whether the URL can
    be fetched.

    Args:
        raw: Candidate URL string

    Returns:
        The split URL

    Raises:
        ValueError: If raw is not a syntactically valid URL
    """
    if not raw:
        raise ValueError("empty url")

    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in raw):
        raise ValueError("invalid control character in URL")

    scheme, rest = _split_scheme(raw)
    if scheme:
        if not rest:
            raise ValueError(f"missing host or path after scheme \"{scheme}\"")
    else:
        colon = rest.find(":")
        slash = rest.find("/")
        if colon != -1 and (slash == -1 or colon < slash):
            raise ValueError("first path segment in URL cannot contain colon")

    _check_escapes(raw)

    parts = urlsplit(raw)
    for ch in parts.netloc:
        if ch.isspace():
            raise ValueError(f"invalid character {ch!r} in host name")
    # Accessing .port validates it.
    parts.port
    return parts


def split_checksum(url: str) -> Tuple[str, Optional[Tuple[str, str]]]:
    """
    Remove a ``checksum=<algorithm>:<hex>`` query parameter from url.

    Args:
        url: Download URL, possibly carrying a checksum parameter

    Returns:
        Tuple of (url without the parameter, (algorithm, hexdigest) or None)

    Raises:
        ValueError: If the checksum parameter is malformed or uses an
            unsupported algorithm
    """
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    checksums = [value for key, value in query if key == CHECKSUM_PARAM]
    if not checksums:
        return url, None
    if len(checksums) > 1:
        raise ValueError("more than one checksum parameter given")

    algorithm, sep, digest = checksums[0].partition(":")
    algorithm = algorithm.lower()
    if not sep or not digest:
        raise ValueError(f"invalid checksum \"{checksums[0]}\": expected <algorithm>:<hex>")
    if algorithm not in SUPPORTED_CHECKSUMS:
        raise ValueError(f"unsupported checksum algorithm \"{algorithm}\"")
    expected_len = hashlib.new(algorithm).digest_size * 2
    if len(digest) != expected_len or any(c not in string.hexdigits for c in digest):
        raise ValueError(f"invalid {algorithm} checksum \"{digest}\"")

    remaining = [(key, value) for key, value in query if key != CHECKSUM_PARAM]
    clean = urlunsplit(parts._replace(query=urlencode(remaining)))
    return clean, (algorithm, digest.lower())
