"""Shared utility functions."""

from __future__ import annotations

import hashlib
import re
import shlex
from datetime import datetime, timezone

from errors import ConfigError

MASK = "******"

_SAFE_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_$-]{1,64}$")

# Credential shapes that can show up on a command line.
_SECRET_PATTERNS = [
    re.compile(r"(--password=)(\S+)"),
    re.compile(r"(--password\s+)(\S+)"),
    re.compile(r"(://[^:/@\s]+:)([^@\s]+)(@)"),
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def sha256_file(path: str) -> str:
    """Compute the SHA256 hex digest of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def format_size(size_bytes: int) -> str:
    """Format a byte count as a human-readable string (B, KB, MB, GB)."""
    if size_bytes >= 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 ** 3):.1f} GB"
    elif size_bytes >= 1024 * 1024:
        return f"{size_bytes / (1024 ** 2):.1f} MB"
    elif size_bytes >= 1024:
        return f"{size_bytes / 1024:.1f} KB"
    else:
        return f"{size_bytes} B"


def tokenize_options(options: str | None) -> list[str]:
    """Split a free-form options string the way a POSIX shell would."""
    if not options or not options.strip():
        return []
    try:
        return shlex.split(options)
    except ValueError as exc:
        raise ConfigError(f"Cannot parse extra options {options!r}: {exc}") from None


def mask_secrets(text: str, secrets=()) -> str:
    """Replace known secret values and password-looking arguments with a mask."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, MASK)
    for pattern in _SECRET_PATTERNS:
        if pattern.groups == 3:
            text = pattern.sub(lambda m: f"{m.group(1)}{MASK}{m.group(3)}", text)
        else:
            text = pattern.sub(lambda m: f"{m.group(1)}{MASK}", text)
    return text


def format_command(binary: str, args: list[str], secrets=()) -> str:
    """Render an argv for logs with credentials masked."""
    return mask_secrets(" ".join(shlex.quote(a) for a in [binary, *args]), secrets)


def validate_identifier(name: str) -> None:
    """Reject database names that are not safe for interpolation into SQL or paths."""
    if not _SAFE_IDENTIFIER_RE.match(name or ""):
        raise ConfigError(
            f"Unsafe database identifier: {name!r}. Only letters, digits, "
            f"'_', '$' and '-' are allowed (max 64 characters)."
        )


def version_tuple(version: str | None) -> tuple[int, ...]:
    """Turn '8.0.35-log' into (8, 0, 35). Empty tuple when nothing parses."""
    if not version:
        return ()
    match = re.match(r"\s*(\d+(?:\.\d+)*)", version)
    if not match:
        return ()
    return tuple(int(p) for p in match.group(1).split("."))
