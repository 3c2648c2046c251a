import os
from typing import Any


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


MIN_ID_BYTES = 4
MAX_ID_BYTES = 32

CONFIG: dict[str, Any] = {
    "bookmark_store": os.getenv("STATEMARK_BOOKMARK_STORE", "url"),
    "store_dir": os.getenv("STATEMARK_STORE_DIR", "statemark_bookmarks"),
    "store_timeout": _get_float("STATEMARK_STORE_TIMEOUT", 5.0),
    # browsers start truncating query strings around this length
    "max_url_length": 2000,
    "max_depth": 32,
    "id_bytes": 8,
}


def deep_merge(dict1: dict, dict2: dict) -> dict:
    """
    Recursively merge two dictionaries, returning a new dict.
    Values in dict2 take precedence; nested dicts are merged rather than replaced.
    """
    result = dict1.copy()
    for k, v in dict2.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def configure(options: dict[str, Any] | None = None, **kwargs: Any) -> None:
    """
    Update process-wide defaults.

    Usage:
        configure(bookmark_store="server", store_dir="/var/lib/myapp/bookmarks")
        configure({"store_timeout": 2.0})
    """
    unknown = set(options or {}) | set(kwargs)
    unknown -= set(CONFIG)
    if unknown:
        raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
    merged = deep_merge(CONFIG, {**(options or {}), **kwargs})
    id_bytes = merged["id_bytes"]
    # store ids must fit statemark.store.valid_id: 8 to 64 hex characters
    if not isinstance(id_bytes, int) or not MIN_ID_BYTES <= id_bytes <= MAX_ID_BYTES:
        raise ValueError(
            f"id_bytes must be an integer from {MIN_ID_BYTES} to {MAX_ID_BYTES}, got {id_bytes!r}"
        )
    CONFIG.update(merged)
