from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any

logger = logging.getLogger(__name__)

MAX_ATTACHMENTS = 10
PORTAL_ATTACHMENT_FOLDERS = frozenset({"portal-requests", "portal-messages", "messages"})
UPLOAD_SCOPE_FOLDERS = {
    "request": "portal-requests",
    "message": "portal-messages",
}


def _as_dict(attachment: Any) -> dict[str, Any] | None:
    if isinstance(attachment, dict):
        return dict(attachment)
    dump = getattr(attachment, "model_dump", None)
    if callable(dump):
        return dump()
    return None


def attachment_belongs_to(attachment: dict[str, Any], *, team_id: str, customer_id: str) -> bool:
    path = attachment.get("path")
    if not isinstance(path, (list, tuple)) or len(path) < 4:
        return False
    path_team, scope, path_customer, folder = path[:4]
    return (
        path_team == team_id
        and scope == "customers"
        and path_customer == customer_id
        and folder in PORTAL_ATTACHMENT_FOLDERS
    )


def authorize_attachments(
    attachments: list[Any] | None,
    *,
    team_id: str,
    customer_id: str,
) -> tuple[list[dict[str, Any]], int]:
    """Keep only attachments stored under this customer's portal folders.

    Returns the accepted attachments (at most ``MAX_ATTACHMENTS``) and how many
    were dropped, so callers can report silent drops.
    """
    submitted = list(attachments or [])
    accepted: list[dict[str, Any]] = []
    for raw in submitted:
        item = _as_dict(raw)
        if item is None:
            continue
        if not attachment_belongs_to(item, team_id=team_id, customer_id=customer_id):
            continue
        item["path"] = list(item["path"])
        item.pop("download_url", None)
        accepted.append(item)
    accepted = accepted[:MAX_ATTACHMENTS]
    dropped = len(submitted) - len(accepted)
    if dropped:
        logger.warning(
            "portal_attachments_dropped count=%d submitted=%d team_id=%s customer_id=%s",
            dropped,
            len(submitted),
            team_id,
            customer_id,
        )
    return accepted, dropped


def sanitize_portal_file_name(file_name: str) -> str:
    base_name = re.sub(r"[\\/]", "_", file_name)
    base_name = re.sub(r"[^\w.\-() ]+", "_", base_name, flags=re.ASCII).strip()
    return base_name or "attachment"


def build_upload_path(
    *,
    team_id: str,
    customer_id: str,
    scope: str,
    file_name: str,
    now_ms: int | None = None,
    nonce: str | None = None,
) -> list[str]:
    folder = UPLOAD_SCOPE_FOLDERS.get(scope, UPLOAD_SCOPE_FOLDERS["request"])
    stamp = int(time.time() * 1000) if now_ms is None else now_ms
    token = nonce or str(uuid.uuid4())
    return [
        team_id,
        "customers",
        customer_id,
        folder,
        f"{stamp}-{token}-{sanitize_portal_file_name(file_name)}",
    ]
