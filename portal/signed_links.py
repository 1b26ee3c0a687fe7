from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from portal.object_storage import ObjectStorageBackend

logger = logging.getLogger(__name__)

DEFAULT_ATTACHMENT_TTL_S = 30 * 60
DEFAULT_ASSET_TTL_S = 60 * 60


def _object_path(path: Any) -> str:
    if isinstance(path, (list, tuple)):
        return "/".join(str(part) for part in path if str(part))
    if isinstance(path, str):
        return path.strip()
    return ""


class SignedLinkEnricher:
    """Resolve attachment and asset paths into time-limited download links.

    Every link in a batch is signed on its own worker; a failed signature only
    nulls that one ``download_url`` and never fails the batch.
    """

    def __init__(
        self,
        *,
        storage: ObjectStorageBackend,
        attachment_ttl_s: int = DEFAULT_ATTACHMENT_TTL_S,
        asset_ttl_s: int = DEFAULT_ASSET_TTL_S,
        max_workers: int = 8,
    ) -> None:
        self._storage = storage
        self._attachment_ttl_s = attachment_ttl_s
        self._asset_ttl_s = asset_ttl_s
        self._max_workers = max(1, max_workers)

    def sign(self, path: Any, *, expires_in: int) -> str | None:
        object_path = _object_path(path)
        if not object_path:
            return None
        try:
            return self._storage.create_signed_download_url(path=object_path, expires_in=expires_in, download=True)
        except Exception as exc:
            logger.warning("portal_signed_link_failed path=%s error=%s", object_path, exc)
            return None

    def _sign_all(self, paths: list[Any], *, expires_in: int) -> list[str | None]:
        if not paths:
            return []
        workers = min(self._max_workers, len(paths))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="portal-sign") as pool:
            return list(pool.map(lambda p: self.sign(p, expires_in=expires_in), paths))

    def with_signed_attachments(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Return copies of ``records`` whose attachments carry a ``download_url``."""
        copies: list[dict[str, Any]] = []
        slots: list[tuple[int, int]] = []
        paths: list[Any] = []
        for record_index, record in enumerate(records):
            item = dict(record)
            attachments = [dict(att) for att in item.get("attachments") or [] if isinstance(att, dict)]
            item["attachments"] = attachments
            copies.append(item)
            for attachment_index, attachment in enumerate(attachments):
                slots.append((record_index, attachment_index))
                paths.append(attachment.get("path"))

        urls = self._sign_all(paths, expires_in=self._attachment_ttl_s)
        for (record_index, attachment_index), url in zip(slots, urls):
            copies[record_index]["attachments"][attachment_index]["download_url"] = url
        return copies

    def with_signed_assets(self, assets: list[dict[str, Any]]) -> list[dict[str, Any]]:
        urls = self._sign_all([asset.get("path_tokens") for asset in assets], expires_in=self._asset_ttl_s)
        out = []
        for asset, url in zip(assets, urls):
            item = dict(asset)
            item["download_url"] = url
            out.append(item)
        return out
