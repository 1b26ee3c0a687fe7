from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from portal.config import split_csv
from portal.errors import ApiError


def _b64url_decode(raw: str) -> bytes:
    padded = raw + "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        if value.strip().isdigit():
            return int(value.strip())
    return None


def _auth_error(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
        kind="unauthorized",
    )


@dataclass
class AuthContext:
    subject: str
    team_id: str | None
    email: str | None
    claims: dict[str, Any]

    @property
    def display_name(self) -> str | None:
        for key in ("name", "full_name"):
            value = self.claims.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return self.email


@dataclass
class JwtSecurityConfig:
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    team_claim: str
    email_claim: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JwtSecurityConfig":
        env = os.environ if environ is None else environ
        return cls(
            issuer=env.get("JWT_ISSUER", "").strip(),
            audience=env.get("JWT_AUDIENCE", "").strip(),
            shared_secret=env.get("JWT_SHARED_SECRET", "").strip(),
            required_claims=split_csv(env.get("JWT_REQUIRED_CLAIMS", "sub,exp")),
            team_claim=env.get("JWT_TEAM_CLAIM", "team_id").strip() or "team_id",
            email_claim=env.get("JWT_EMAIL_CLAIM", "email").strip() or "email",
        )


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise _auth_error("missing Authorization bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer":
        raise _auth_error("invalid Authorization header")
    token = token.strip()
    if not token:
        raise _auth_error("empty bearer token")
    return token


def _decode_segment(raw: str) -> dict[str, Any]:
    try:
        decoded = json.loads(_b64url_decode(raw))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise _auth_error("invalid token payload") from None
    if not isinstance(decoded, dict):
        raise _auth_error("invalid token payload")
    return decoded


def _verified_claims(token: str, *, secret: str) -> dict[str, Any]:
    """Check the HS256 signature and return the decoded claim set."""
    segments = token.split(".")
    if len(segments) != 3:
        raise _auth_error("invalid token format")
    header = _decode_segment(segments[0])
    claims = _decode_segment(segments[1])
    if str(header.get("alg", "")).upper() != "HS256":
        raise _auth_error("unsupported jwt algorithm")
    if not secret:
        raise _auth_error("jwt shared secret not configured")
    signing_input = f"{segments[0]}.{segments[1]}".encode("ascii")
    digest = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    if not hmac.compare_digest(_b64url_encode(digest), segments[2]):
        raise _auth_error("invalid token signature")
    return claims


def _audience_matches(aud: Any, expected: str) -> bool:
    if isinstance(aud, list):
        return expected in {str(x) for x in aud}
    return str(aud or "") == expected


def _check_registered_claims(claims: dict[str, Any], cfg: JwtSecurityConfig) -> None:
    now_ts = int(datetime.now(UTC).timestamp())
    exp = _as_int(claims.get("exp"))
    if exp is None or exp <= now_ts:
        raise _auth_error("token expired")
    nbf = _as_int(claims.get("nbf"))
    if nbf is not None and nbf > now_ts:
        raise _auth_error("token not yet valid")
    if cfg.issuer and str(claims.get("iss", "")) != cfg.issuer:
        raise _auth_error("jwt issuer mismatch")
    if cfg.audience and not _audience_matches(claims.get("aud"), cfg.audience):
        raise _auth_error("jwt audience mismatch")
    missing = [claim for claim in cfg.required_claims if claim not in claims]
    if missing:
        raise _auth_error(f"missing required claim: {missing[0]}")


def _claim_text(claims: dict[str, Any], name: str) -> str | None:
    return str(claims.get(name) or "").strip() or None


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    """Resolve the caller behind an HS256 bearer token.

    Portal sessions identify a client by the email claim; dashboard sessions
    additionally carry the team claim. Neither is required here, callers
    decide which identity they need.
    """
    claims = _verified_claims(_bearer_token(authorization), secret=cfg.shared_secret)
    _check_registered_claims(claims, cfg)
    subject = _claim_text(claims, "sub")
    if subject is None:
        raise _auth_error("missing subject claim")
    return AuthContext(
        subject=subject,
        team_id=_claim_text(claims, cfg.team_claim),
        email=_claim_text(claims, cfg.email_claim),
        claims=claims,
    )
