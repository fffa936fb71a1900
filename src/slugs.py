"""Slugs for Kubernetes object names and label values.

Slugs are always valid for arbitrary input strings, and different inputs
never produce the same slug: anything that is not already a valid name is
stripped down and suffixed with a hash of the original.
"""

import hashlib
import re
import string
from collections.abc import Callable, Sequence

_HASH_LENGTH = 8
_OBJECT_PATTERN = re.compile(r"^[a-z0-9\-]+$")
_LABEL_PATTERN = re.compile(r"^[a-z0-9.\-_]+$", flags=re.IGNORECASE)
_NON_ALPHANUM_PATTERN = re.compile(r"[^a-z0-9]+")

_ALPHA_LOWER = string.ascii_lowercase
_ALPHANUM_LOWER = string.ascii_lowercase + string.digits
_ALPHANUM = string.ascii_letters + string.digits


def _is_valid_general(
    s: str,
    starts_with: str | None = None,
    ends_with: str | None = None,
    pattern: re.Pattern[str] | None = None,
    min_length: int | None = None,
    max_length: int | None = None,
) -> bool:
    if min_length is not None and len(s) < min_length:
        return False
    if max_length is not None and len(s) > max_length:
        return False
    if starts_with and (not s or s[0] not in starts_with):
        return False
    if ends_with and (not s or s[-1] not in ends_with):
        return False
    if pattern and not pattern.match(s):
        return False
    return True


def is_valid_object_name(s: str) -> bool:
    """Check if a string is a valid DNS-label style object name."""
    return _is_valid_general(
        s,
        starts_with=_ALPHA_LOWER,
        ends_with=_ALPHANUM_LOWER,
        pattern=_OBJECT_PATTERN,
        min_length=1,
        max_length=63,
    )


def is_valid_label(s: str) -> bool:
    """Check if a string is a valid label value (empty is valid)."""
    if not s:
        return True
    return _is_valid_general(
        s,
        starts_with=_ALPHANUM,
        ends_with=_ALPHANUM,
        pattern=_LABEL_PATTERN,
        max_length=63,
    )


def is_valid_default(s: str) -> bool:
    """Strict validation, safe for object names and label values alike."""
    return is_valid_object_name(s)


def _extract_safe_name(name: str, max_length: int) -> str:
    """Reduce a name to lowercase alphanumerics and hyphens.

    Example: 'My_Project.COM' -> 'my-project-com'
    """
    safe_name = _NON_ALPHANUM_PATTERN.sub("-", name.lower())
    safe_name = safe_name.lstrip("-")[:max_length].rstrip("-")
    if safe_name and safe_name[0] not in _ALPHA_LOWER:
        # must start with a letter
        safe_name = ("x-" + safe_name[: max_length - 2]).rstrip("-")
    if not safe_name:
        safe_name = "x"
    return safe_name


def strip_and_hash(name: str, max_length: int = 32) -> str:
    """Generate an always-safe, unique slug: '<safe-name>---<hash>'.

    Example: 'User@Example.COM' -> 'user-example-com---<8 hex chars>'
    """
    name_length = max_length - (_HASH_LENGTH + 3)
    if name_length < 1:
        raise ValueError(f"Cannot make safe names shorter than {_HASH_LENGTH + 4}")
    name_hash = hashlib.sha256(name.encode("utf8")).hexdigest()[:_HASH_LENGTH]
    safe_name = _extract_safe_name(name, name_length)
    return f"{safe_name}---{name_hash}"


def safe_slug(
    name: str,
    is_valid: Callable[[str], bool] = is_valid_default,
    max_length: int | None = None,
) -> str:
    """Return name unchanged if it is valid, a hashed slug otherwise.

    Names containing '--' are always hashed so they cannot collide with
    the output of `strip_and_hash` or `multi_slug`.
    """
    if "--" in name:
        return strip_and_hash(name, max_length=max_length or 32)
    if is_valid(name) and (max_length is None or len(name) <= max_length):
        return name
    return strip_and_hash(name, max_length=max_length or 32)


def multi_slug(names: Sequence[str], max_length: int = 48) -> str:
    """Combine several names into one unique slug.

    Each name gets an equal share of the length budget; the hash covers
    all names joined with a 0xFF byte, which cannot occur in UTF-8 text.
    """
    hasher = hashlib.sha256(names[0].encode("utf8"))
    for name in names[1:]:
        hasher.update(b"\xff")
        hasher.update(name.encode("utf8"))
    names_hash = hasher.hexdigest()[:_HASH_LENGTH]

    available_chars = max_length - (_HASH_LENGTH + 3)
    per_name = available_chars // len(names)
    name_max_length = per_name - 2
    if name_max_length < 2:
        raise ValueError(f"Not enough characters for {len(names)} names: {max_length}")

    name_slugs = [_extract_safe_name(name, name_max_length) for name in names]
    return "--".join(name_slugs) + f"---{names_hash}"
