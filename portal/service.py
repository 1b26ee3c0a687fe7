"""Portal request and messaging pipeline.

Every public portal call re-runs the access guard before touching storage, and
every repository call is wrapped so storage failures are classified once, at the
call site. Reads decorate attachments with signed links and normalise resources.
"""

from __future__ import annotations

import html
import logging
import os
import secrets
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from portal.access import authorize_portal_access, emails_match, find_portal_customer, normalize_email
from portal.attachments import authorize_attachments, build_upload_path
from portal.config import PortalSettings
from portal.db.migrations import PostgresMigrator
from portal.db.postgres import PostgresTxRunner
from portal.db.rls import PostgresRlsManager
from portal.error_mapping import storage_errors, storage_error_text
from portal.errors import ApiError, not_found_error, unauthorized_error
from portal.mailer import Mailer, create_mailer_from_env
from portal.object_storage import ObjectStorageBackend, create_object_storage_from_env
from portal.repositories import (
    InMemoryAssetsRepository,
    InMemoryCustomersRepository,
    InMemoryMessagesRepository,
    InMemoryRequestsRepository,
    PostgresAssetsRepository,
    PostgresCustomersRepository,
    PostgresMessagesRepository,
    PostgresRequestsRepository,
)
from portal.repositories._common import is_uuid
from portal.repositories.requests import is_active_status
from portal.resources import count_dropped_resources, normalize_resources
from portal.schemas import CreateMessageInput, CreateRequestInput, UpdateRequestInput, UploadSlotInput
from portal.security import AuthContext
from portal.signed_links import SignedLinkEnricher

logger = logging.getLogger(__name__)

PORTAL_ID_BYTES = 6
PORTAL_ID_ATTEMPTS = 3
DEFAULT_PROVIDER_SENDER = "Team"


@dataclass
class Outcome:
    data: Any
    meta: dict[str, Any] = field(default_factory=dict)


def _present_request(row: dict[str, Any]) -> dict[str, Any]:
    item = dict(row)
    item["resources"] = normalize_resources(item.get("resources"), item.pop("staging_url", None))
    return item


def _asset_file_name(asset: dict[str, Any]) -> str:
    tokens = asset.get("path_tokens") or []
    if tokens:
        return str(tokens[-1])
    return str(asset.get("name") or "")


def _upload_error(exc: Exception) -> ApiError:
    text = storage_error_text(exc)
    if "bucket" in text and ("not found" in text or "nosuchbucket" in text or "404" in text):
        return ApiError(
            code="STORAGE_BUCKET_MISSING",
            message="Storage bucket is missing. Create it or run pending storage migrations.",
            error_class="infrastructure",
            retryable=False,
            http_status=500,
        )
    if isinstance(exc, ConnectionError) or any(
        phrase in text
        for phrase in ("could not connect", "name or service not known", "enotfound", "connection refused")
    ):
        return ApiError(
            code="STORAGE_UNREACHABLE",
            message="Object storage endpoint is unreachable. Check OBJECT_STORAGE_ENDPOINT, then restart the API.",
            error_class="infrastructure",
            retryable=True,
            http_status=503,
        )
    return ApiError(
        code="UPLOAD_INIT_FAILED",
        message="Unable to initialize file upload",
        error_class="infrastructure",
        retryable=True,
        http_status=500,
    )


class PortalService:
    def __init__(
        self,
        *,
        settings: PortalSettings,
        customers: Any,
        requests: Any,
        messages: Any,
        assets: Any,
        storage: ObjectStorageBackend,
        mailer: Mailer,
        schema_check: Callable[[], dict[str, Any]] | None = None,
    ) -> None:
        self.settings = settings
        self.customers = customers
        self.requests = requests
        self.messages = messages
        self.assets = assets
        self.storage = storage
        self.mailer = mailer
        self.enricher = SignedLinkEnricher(
            storage=storage,
            attachment_ttl_s=settings.attachment_link_ttl_s,
            asset_ttl_s=settings.asset_link_ttl_s,
            max_workers=settings.signing_max_workers,
        )
        self._schema_check = schema_check

    def portal_customer(self, *, portal_id: str, caller_email: str | None) -> dict[str, Any]:
        return authorize_portal_access(self.customers, portal_id=portal_id, caller_email=caller_email)

    def team_customer(self, *, team_id: str, customer_id: str) -> dict[str, Any]:
        if not is_uuid(customer_id):
            raise not_found_error("CUSTOMER_NOT_FOUND", "customer not found")
        with storage_errors(subject="customers", operation="read", context={"customer_id": customer_id}):
            customer = self.customers.get(team_id=team_id, customer_id=customer_id)
        if customer is None:
            raise not_found_error("CUSTOMER_NOT_FOUND", "customer not found")
        return customer

    def verify_portal(self, *, portal_id: str, caller_email: str | None) -> dict[str, Any]:
        customer = self.portal_customer(portal_id=portal_id, caller_email=caller_email)
        return {"email": customer.get("email"), "customer_name": customer.get("name")}

    def list_requests(self, *, team_id: str, customer_id: str) -> list[dict[str, Any]]:
        with storage_errors(subject="requests", operation="read", context={"customer_id": customer_id}):
            rows = self.requests.list_by_customer(team_id=team_id, customer_id=customer_id)
        return self.enricher.with_signed_attachments([_present_request(row) for row in rows])

    def portal_request_view(self, *, team_id: str, customer_id: str) -> dict[str, Any]:
        requests = self.list_requests(team_id=team_id, customer_id=customer_id)
        active = next((r for r in requests if is_active_status(r.get("status"))), None)
        return {
            "active_request": active,
            "backlog": [r for r in requests if r.get("status") == "backlog"],
            "requests": requests,
        }

    def create_request(self, *, team_id: str, customer_id: str, payload: CreateRequestInput) -> Outcome:
        attachments, dropped = authorize_attachments(payload.attachments, team_id=team_id, customer_id=customer_id)
        with storage_errors(subject="requests", operation="write", context={"customer_id": customer_id}):
            row = self.requests.create(
                team_id=team_id,
                customer_id=customer_id,
                title=payload.title,
                details=payload.details or None,
                requested_by=payload.requested_by or None,
                attachments=attachments,
                resources=[],
            )
        logger.info(
            "portal_request_created team_id=%s customer_id=%s request_id=%s priority=%s",
            team_id,
            customer_id,
            row["id"],
            row["priority"],
        )
        data = self.enricher.with_signed_attachments([_present_request(row)])[0]
        return Outcome(data=data, meta={"dropped_attachments": dropped})

    def update_request(
        self,
        *,
        team_id: str,
        customer_id: str,
        request_id: str,
        payload: UpdateRequestInput,
    ) -> Outcome:
        resources = None
        dropped = 0
        if payload.resources is not None:
            resources = normalize_resources(payload.resources)
            dropped = count_dropped_resources(payload.resources, resources)
            if dropped:
                logger.warning(
                    "portal_resources_dropped count=%d team_id=%s customer_id=%s request_id=%s",
                    dropped,
                    team_id,
                    customer_id,
                    request_id,
                )
        context = {"customer_id": customer_id, "request_id": request_id, "status": payload.status}
        with storage_errors(subject="requests", operation="write", context=context):
            row = self.requests.update_status_and_resources(
                team_id=team_id,
                customer_id=customer_id,
                request_id=request_id,
                status=payload.status,
                resources=resources,
            )
        if row is None:
            raise not_found_error("REQUEST_NOT_FOUND", "request not found")
        data = self.enricher.with_signed_attachments([_present_request(row)])[0]
        return Outcome(data=data, meta={"dropped_resources": dropped})

    def reorder_backlog(self, *, team_id: str, customer_id: str, request_ids: list[str]) -> dict[str, Any]:
        with storage_errors(subject="requests", operation="write", context={"customer_id": customer_id}):
            ordered = self.requests.reorder_backlog(
                team_id=team_id,
                customer_id=customer_id,
                request_ids=request_ids,
            )
        return {"request_ids": ordered}

    def list_messages(self, *, team_id: str, customer_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        """Most recent first; display callers reverse for chronological order."""
        with storage_errors(subject="messages", operation="read", context={"customer_id": customer_id}):
            rows = self.messages.list(team_id=team_id, customer_id=customer_id, limit=limit)
        return self.enricher.with_signed_attachments(rows)

    def create_message(
        self,
        *,
        team_id: str,
        customer_id: str,
        payload: CreateMessageInput,
        sender_type: str,
        sender_name: str | None,
        sender_user_id: str | None = None,
    ) -> Outcome:
        attachments, dropped = authorize_attachments(payload.attachments, team_id=team_id, customer_id=customer_id)
        with storage_errors(subject="messages", operation="write", context={"customer_id": customer_id}):
            row = self.messages.create(
                team_id=team_id,
                customer_id=customer_id,
                request_id=payload.request_id,
                sender_type=sender_type,
                sender_user_id=sender_user_id if sender_type == "freelancer" else None,
                sender_name=sender_name,
                message=payload.message,
                attachments=attachments,
            )
        data = self.enricher.with_signed_attachments([row])[0]
        return Outcome(data=data, meta={"dropped_attachments": dropped})

    def create_client_message(self, *, customer: dict[str, Any], payload: CreateMessageInput) -> Outcome:
        return self.create_message(
            team_id=customer["team_id"],
            customer_id=customer["id"],
            payload=payload,
            sender_type="client",
            sender_name=payload.sender_name or customer.get("name"),
        )

    def create_team_message(self, *, auth: AuthContext, customer_id: str, payload: CreateMessageInput) -> Outcome:
        return self.create_message(
            team_id=str(auth.team_id),
            customer_id=customer_id,
            payload=payload,
            sender_type="freelancer",
            sender_name=payload.sender_name or auth.display_name or DEFAULT_PROVIDER_SENDER,
            sender_user_id=auth.subject,
        )

    def create_upload_slot(self, *, team_id: str, customer_id: str, payload: UploadSlotInput) -> dict[str, Any]:
        path = build_upload_path(
            team_id=team_id,
            customer_id=customer_id,
            scope=payload.scope,
            file_name=payload.file_name,
        )
        try:
            slot = self.storage.create_signed_upload_url(path="/".join(path), content_type=payload.content_type)
        except Exception as exc:
            logger.error(
                "portal_upload_init_failed team_id=%s customer_id=%s path=%s error=%s",
                team_id,
                customer_id,
                "/".join(path),
                exc,
            )
            raise _upload_error(exc) from exc
        if not slot.get("token"):
            raise _upload_error(RuntimeError("storage returned no upload token"))
        return {"path": path, "token": slot["token"], "url": slot.get("url")}

    def list_assets(self, *, team_id: str, customer_id: str, page_size: int | None = None) -> list[dict[str, Any]]:
        with storage_errors(subject="assets", operation="read", context={"customer_id": customer_id}):
            documents = self.assets.list_for_customer(team_id=team_id, customer_id=customer_id, page_size=page_size)
        items = [
            {
                "id": doc.get("id"),
                "title": doc.get("title"),
                "name": doc.get("name"),
                "file_name": _asset_file_name(doc),
                "path_tokens": list(doc.get("path_tokens") or []),
                "metadata": doc.get("metadata"),
                "created_at": doc.get("created_at"),
            }
            for doc in documents
        ]
        return self.enricher.with_signed_assets(items)

    def portal_url(self, portal_id: str) -> str:
        if not self.settings.dashboard_url:
            raise ApiError(
                code="PORTAL_DASHBOARD_URL_MISSING",
                message="Dashboard URL is not configured",
                error_class="infrastructure",
                retryable=False,
                http_status=500,
            )
        return f"{self.settings.dashboard_url}/client/{portal_id}"

    def toggle_portal(self, *, team_id: str, customer_id: str, enabled: bool) -> dict[str, Any]:
        self.team_customer(team_id=team_id, customer_id=customer_id)
        for attempt in range(1, PORTAL_ID_ATTEMPTS + 1):
            try:
                with storage_errors(subject="customers", operation="write", context={"customer_id": customer_id}):
                    customer = self.customers.set_portal(
                        team_id=team_id,
                        customer_id=customer_id,
                        enabled=enabled,
                        portal_id=secrets.token_urlsafe(PORTAL_ID_BYTES),
                    )
                break
            except ApiError as exc:
                if exc.code != "PORTAL_ID_CONFLICT" or attempt == PORTAL_ID_ATTEMPTS:
                    raise
                logger.warning(
                    "portal_id_collision team_id=%s customer_id=%s attempt=%s", team_id, customer_id, attempt
                )
        if customer is None:
            raise not_found_error("CUSTOMER_NOT_FOUND", "customer not found")
        logger.info(
            "portal_toggled team_id=%s customer_id=%s enabled=%s portal_id=%s",
            team_id,
            customer_id,
            enabled,
            customer.get("portal_id"),
        )
        return {
            "customer_id": customer["id"],
            "portal_enabled": customer["portal_enabled"],
            "portal_id": customer["portal_id"],
        }

    def login_link_message(self, *, portal_id: str, email: str) -> dict[str, str]:
        customer = find_portal_customer(self.customers, portal_id=portal_id)
        if not emails_match(customer.get("email"), email):
            raise unauthorized_error("Email does not match the customer email on file")
        portal_url = self.portal_url(portal_id)
        sender = self.settings.sender_name
        customer_name = customer.get("name") or "there"
        return {
            "to": normalize_email(email),
            "subject": f"Sign in to {sender} portal",
            "text": f"Hi {customer_name},\n\nOpen your portal: {portal_url}\n",
            "html": (
                f"<p>Hi {html.escape(customer_name)},</p>"
                f'<p><a href="{html.escape(portal_url, quote=True)}">Open your portal</a></p>'
            ),
        }

    def readiness(self) -> dict[str, Any]:
        if self._schema_check is None:
            return {"store_backend": self.settings.store_backend, "schema": "n/a"}
        return {"store_backend": self.settings.store_backend, **self._schema_check()}


def create_service_from_env(environ: Mapping[str, str] | None = None) -> PortalService:
    env = os.environ if environ is None else environ
    settings = PortalSettings.from_env(env)
    storage = create_object_storage_from_env(env)
    mailer = create_mailer_from_env(env)
    if settings.store_backend == "postgres":
        runner = PostgresTxRunner(settings.postgres_dsn)
        if settings.apply_rls:
            PostgresRlsManager(settings.postgres_dsn).apply()
        return PortalService(
            settings=settings,
            customers=PostgresCustomersRepository(tx_runner=runner),
            requests=PostgresRequestsRepository(tx_runner=runner),
            messages=PostgresMessagesRepository(tx_runner=runner),
            assets=PostgresAssetsRepository(tx_runner=runner),
            storage=storage,
            mailer=mailer,
            schema_check=PostgresMigrator(tx_runner=runner).verify,
        )
    return PortalService(
        settings=settings,
        customers=InMemoryCustomersRepository(),
        requests=InMemoryRequestsRepository(),
        messages=InMemoryMessagesRepository(),
        assets=InMemoryAssetsRepository(),
        storage=storage,
        mailer=mailer,
    )
