from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

LEGACY_STAGING_LABEL = "Live Staging"
MAX_RESOURCE_LABEL_LENGTH = 80


def is_valid_http_url(value: str) -> bool:
    if not value or any(ch.isspace() for ch in value):
        return False
    try:
        parsed = urlsplit(value)
    except ValueError:
        return False
    return parsed.scheme.lower() in {"http", "https"} and bool(parsed.netloc) and bool(parsed.hostname)


def _normalize_entry(entry: Any) -> dict[str, str] | None:
    if not isinstance(entry, dict):
        return None
    label = entry.get("label")
    url = entry.get("url")
    if not isinstance(label, str) or not isinstance(url, str):
        return None
    label = label.strip()
    url = url.strip()
    if not label or len(label) > MAX_RESOURCE_LABEL_LENGTH:
        return None
    if not is_valid_http_url(url):
        return None
    return {"label": label, "url": url}


def normalize_resources(raw: Any, legacy_url: str | None = None) -> list[dict[str, str]]:
    """Canonicalize a request's resource list, dropping malformed entries.

    Rows written before resources existed carry only ``staging_url``; when no
    list is stored at all, a valid legacy URL becomes a single "Live Staging"
    resource. A stored list, even an empty one, always wins over the legacy field.
    """
    if isinstance(raw, (list, tuple)):
        normalized = []
        for entry in raw:
            item = _normalize_entry(entry)
            if item is not None:
                normalized.append(item)
        return normalized

    if isinstance(legacy_url, str) and is_valid_http_url(legacy_url.strip()):
        return [{"label": LEGACY_STAGING_LABEL, "url": legacy_url.strip()}]
    return []


def count_dropped_resources(raw: Any, normalized: list[dict[str, str]]) -> int:
    if not isinstance(raw, (list, tuple)):
        return 0
    return len(raw) - len(normalized)
