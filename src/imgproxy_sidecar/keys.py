"""Storage keys for captured responses.

A key is the MD5 hex digest of the request path, or of the part of the path
after the imgproxy signature segment. MD5 is only used as a compact,
stable name here; two paths colliding is an accepted limitation.
"""

import hashlib
from enum import Enum

# Returned when a path cannot produce a key. Callers must skip the upload.
NO_KEY = ""


class KeyPolicy(str, Enum):
    """Which part of the request path feeds the hash."""

    PATH = "path"  # the whole path, signature included
    SUFFIX = "suffix"  # everything after the signature segment


def hash_path(value: str) -> str:
    """Hex-encoded 128-bit digest of the UTF-8 bytes of value."""
    return hashlib.md5(value.encode("utf-8"), usedforsecurity=False).hexdigest()


def derive_key(path: str, policy: KeyPolicy = KeyPolicy.PATH) -> str:
    """Derive the storage key for a request path.

    Under the suffix policy the first segment is an opaque per-request
    signature, so `/sig/rs:fit:300/plain/a.jpg` and `/other/rs:fit:300/plain/a.jpg`
    map to the same key.

    Args:
        path: The request path, without the query string.
        policy: Whole-path or suffix hashing.

    Returns:
        The 32-character hex key, or NO_KEY when under the suffix policy
        the path has fewer than three segments or nothing after the signature.
    """
    if policy is KeyPolicy.SUFFIX:
        # Drop the empty segment before the leading slash
        segments = path.split("/")[1:]
        if len(segments) < 3:
            return NO_KEY
        suffix = "/".join(segments[1:])
        if not suffix.strip("/"):
            return NO_KEY
        return hash_path(suffix)
    return hash_path(path)


def storage_key(folder: str, key: str) -> str:
    """Prepend the folder namespace. The folder is not part of the hash."""
    return f"{folder}{key}"
