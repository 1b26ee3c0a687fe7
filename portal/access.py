from __future__ import annotations

import logging
from typing import Any, Protocol

from portal.error_mapping import storage_errors
from portal.errors import not_found_error, unauthorized_error

logger = logging.getLogger(__name__)


class PortalCustomerLookup(Protocol):
    def get_by_portal_id(self, *, portal_id: str) -> dict[str, Any] | None: ...


def normalize_email(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def emails_match(on_file: Any, caller: Any) -> bool:
    left = normalize_email(on_file)
    right = normalize_email(caller)
    return bool(left) and bool(right) and left == right


def find_portal_customer(customers: PortalCustomerLookup, *, portal_id: str) -> dict[str, Any]:
    with storage_errors(subject="customers", operation="read", context={"portal_id": portal_id}):
        customer = customers.get_by_portal_id(portal_id=portal_id)
    if customer is None:
        raise not_found_error("PORTAL_NOT_FOUND", "portal not found")
    return customer


def authorize_portal_access(
    customers: PortalCustomerLookup,
    *,
    portal_id: str,
    caller_email: str | None,
) -> dict[str, Any]:
    """Resolve the portal's customer and require the caller's email to match it.

    Runs on every portal call; the email on file may change between calls, so
    no earlier result is reused.
    """
    customer = find_portal_customer(customers, portal_id=portal_id)
    if not emails_match(customer.get("email"), caller_email):
        logger.info("portal_access_denied portal_id=%s customer_id=%s", portal_id, customer.get("id"))
        raise unauthorized_error("session is not authorized for this portal")
    return customer
