from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    return _as_bool(raw)


def env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return _as_bool(env.get("PORTAL_REQUIRE_TRUESTACK", "false"))


@dataclass(frozen=True)
class PortalSettings:
    store_backend: str
    postgres_dsn: str
    apply_rls: bool
    attachment_link_ttl_s: int
    asset_link_ttl_s: int
    signing_max_workers: int
    dashboard_url: str
    sender_name: str
    cors_allow_origins: list[str]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PortalSettings":
        env = os.environ if environ is None else environ
        backend = env.get("PORTAL_STORE_BACKEND", "memory").strip().lower() or "memory"
        if true_stack_required(env) and backend != "postgres":
            raise RuntimeError("PORTAL_STORE_BACKEND must be postgres when PORTAL_REQUIRE_TRUESTACK=true")
        dsn = env.get("POSTGRES_DSN", "").strip()
        if backend == "postgres" and not dsn:
            raise ValueError("POSTGRES_DSN must be set when PORTAL_STORE_BACKEND=postgres")
        return cls(
            store_backend=backend,
            postgres_dsn=dsn,
            apply_rls=env_bool(env, "POSTGRES_APPLY_RLS", False),
            attachment_link_ttl_s=env_int(env, "PORTAL_ATTACHMENT_LINK_TTL_S", default=30 * 60, minimum=1),
            asset_link_ttl_s=env_int(env, "PORTAL_ASSET_LINK_TTL_S", default=60 * 60, minimum=1),
            signing_max_workers=env_int(env, "PORTAL_SIGNING_MAX_WORKERS", default=8, minimum=1),
            dashboard_url=env.get("PORTAL_DASHBOARD_URL", "").strip().rstrip("/"),
            sender_name=env.get("PORTAL_SENDER_NAME", "").strip() or "Delivery Portal",
            cors_allow_origins=split_csv(
                env.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000")
            ),
        )
