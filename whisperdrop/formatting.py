"""Human-readable rendering shared by transfer ETAs and expiry countdowns."""

import math


def format_duration(seconds: float) -> str:
    """Render whole seconds as ``"42s"`` or ``"3m 5s"``."""
    seconds = max(0, math.ceil(seconds))
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    return f"{minutes}m {secs}s"


def format_file_size(size_bytes: int) -> str:
    if size_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    i = 0
    while size_bytes >= 1024 ** (i + 1) and i < len(units) - 1:
        i += 1
    value = round(size_bytes / 1024**i, 2)
    # 1.0 KB reads better as 1 KB
    if value == int(value):
        value = int(value)
    return f"{value} {units[i]}"
