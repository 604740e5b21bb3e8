import math
import re

UNIT_MULTIPLIERS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 ** 2,
    "GB": 1024 ** 3,
    "TB": 1024 ** 4,
}

_SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)?\s*(B|KB|MB|GB|TB)?$", re.IGNORECASE)


def parse_size(value: str) -> int:
    """Parse a human readable size such as ``"10GB"`` into bytes.

    Units are powers of 1024 and default to bytes. Anything that does not
    match the whole trimmed string yields 0.
    """

    if not isinstance(value, str):
        return 0

    match = _SIZE_PATTERN.match(value.strip())
    if not match:
        return 0

    number, unit = match.groups()
    if not number:
        return 0

    size = float(number) * UNIT_MULTIPLIERS[(unit or "B").upper()]
    if not math.isfinite(size):
        return 0
    return int(math.floor(size))


def human_filesize(num: int) -> str:
    if num < 1024:
        return f"{num} B"
    size = float(num)
    for unit in ["KB", "MB", "GB", "TB"]:
        size /= 1024.0
        if abs(size) < 1024.0:
            return f"{size:.2f} {unit}"
    return f"{size:.2f} PB"
