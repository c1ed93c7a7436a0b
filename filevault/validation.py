# validation.py
import re

from .exceptions import InvalidNameError

MAX_NAME_LENGTH = 255

RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    *(f"COM{i}" for i in range(1, 10)),
    *(f"LPT{i}" for i in range(1, 10)),
}

# Path-hostile characters plus ASCII control characters.
_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def sanitize_name(name: str) -> str:
    """Replaces unsafe characters with underscores and trims outer whitespace."""
    return _UNSAFE_CHARS.sub("_", name).strip()


def is_valid_name(name: str) -> bool:
    """
    Checks an already sanitized name against reserved device names and
    trailing dots/spaces.
    """
    if not name:
        return False
    if name.upper().split(".")[0] in RESERVED_NAMES:
        return False
    if name.endswith(".") or name.endswith(" "):
        return False
    return True


def validate_and_sanitize_name(name: str) -> str:
    """
    Returns the sanitized form of a file or folder name.

    :raises InvalidNameError: If nothing usable is left after sanitizing, the
        name is a reserved device name, ends in a dot or space, or is too long.
    """
    if not isinstance(name, str):
        raise InvalidNameError("Name must be a string")
    if name.endswith(".") or name.endswith(" "):
        raise InvalidNameError(f"Invalid file or folder name: {name!r} ends with a dot or space")

    sanitized = sanitize_name(name)
    if not is_valid_name(sanitized):
        raise InvalidNameError(f"Invalid file or folder name: {name!r}")
    if len(sanitized) > MAX_NAME_LENGTH:
        raise InvalidNameError(f"Name must be less than {MAX_NAME_LENGTH} characters")
    return sanitized
