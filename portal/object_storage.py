from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, quote, urlencode, urlsplit

DEFAULT_UPLOAD_TTL_S = 2 * 60 * 60


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(raw: str) -> bytes:
    padded = raw + "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _clean_key(path: str) -> str:
    parts = [part for part in path.strip().split("/") if part not in {"", ".", ".."}]
    return "/".join(parts)


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool
    public_base_url: str
    signing_secret: str


class ObjectStorageBackend:
    backend_name = "base"

    def create_signed_download_url(
        self,
        *,
        path: str,
        expires_in: int,
        download: bool = True,
        bucket: str | None = None,
    ) -> str:
        raise NotImplementedError

    def create_signed_upload_url(
        self,
        *,
        path: str,
        expires_in: int = DEFAULT_UPLOAD_TTL_S,
        content_type: str | None = None,
        bucket: str | None = None,
    ) -> dict[str, str]:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorageBackend):
    """Filesystem-backed storage that mints HMAC-signed links for local development."""

    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        if not config.signing_secret:
            raise ValueError("OBJECT_STORAGE_SIGNING_SECRET must not be empty for local object storage")
        self._bucket = config.bucket
        self._root = Path(config.root)
        self._prefix = config.prefix.strip("/")
        self._base_url = config.public_base_url.rstrip("/")
        self._secret = config.signing_secret.encode("utf-8")
        (self._root / self._bucket).mkdir(parents=True, exist_ok=True)

    def create_signed_download_url(
        self,
        *,
        path: str,
        expires_in: int,
        download: bool = True,
        bucket: str | None = None,
    ) -> str:
        bucket_name = bucket or self._bucket
        key = self._key_for(path)
        if not self._path_for(bucket_name, key).is_file():
            raise FileNotFoundError(f"object not found: {bucket_name}/{key}")
        token = self._sign({"op": "download", "bucket": bucket_name, "key": key, "download": download}, expires_in)
        query = {"token": token}
        if download:
            query["download"] = key.rsplit("/", 1)[-1]
        return f"{self._base_url}/objects/{quote(bucket_name)}/{quote(key)}?{urlencode(query)}"

    def create_signed_upload_url(
        self,
        *,
        path: str,
        expires_in: int = DEFAULT_UPLOAD_TTL_S,
        content_type: str | None = None,
        bucket: str | None = None,
    ) -> dict[str, str]:
        bucket_name = bucket or self._bucket
        key = self._key_for(path)
        if not (self._root / bucket_name).is_dir():
            raise FileNotFoundError(f"bucket not found: {bucket_name}")
        if self._path_for(bucket_name, key).exists():
            raise FileExistsError(f"object already exists: {bucket_name}/{key}")
        token = self._sign(
            {"op": "upload", "bucket": bucket_name, "key": key, "content_type": content_type or ""},
            expires_in,
        )
        url = f"{self._base_url}/objects/upload/{quote(bucket_name)}/{quote(key)}?{urlencode({'token': token})}"
        return {"url": url, "token": token, "path": key}

    def read_signed(self, *, bucket: str, key: str, token: str) -> tuple[bytes, bool]:
        """Return the object bytes behind a download link and whether it forces a download."""
        claims = self._claims_for(token, op="download", bucket=bucket, key=key)
        target = self._path_for(bucket, claims["key"])
        if not target.is_file():
            raise FileNotFoundError(f"object not found: {bucket}/{key}")
        return target.read_bytes(), bool(claims.get("download"))

    def write_signed(self, *, bucket: str, key: str, token: str, content_bytes: bytes) -> str:
        """Store the body of an upload link; each link writes its object once."""
        claims = self._claims_for(token, op="upload", bucket=bucket, key=key)
        target = self._path_for(bucket, claims["key"])
        if target.exists():
            raise FileExistsError(f"object already exists: {bucket}/{key}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content_bytes)
        return claims["key"]

    def _claims_for(self, token: str, *, op: str, bucket: str, key: str) -> dict[str, Any]:
        claims = self.verify_token(token)
        if claims.get("op") != op or claims.get("bucket") != bucket or claims.get("key") != key:
            raise ValueError("storage token does not match this object")
        return claims

    def verify_token(self, token: str) -> dict[str, Any]:
        payload_raw, _, signature = token.partition(".")
        expected = _b64url_encode(hmac.new(self._secret, payload_raw.encode("ascii"), hashlib.sha256).digest())
        if not signature or not hmac.compare_digest(expected, signature):
            raise ValueError("invalid storage token signature")
        payload = json.loads(_b64url_decode(payload_raw))
        if int(payload.get("exp", 0)) <= int(time.time()):
            raise ValueError("storage token expired")
        return payload

    def _sign(self, claims: dict[str, Any], expires_in: int) -> str:
        payload = dict(claims)
        payload["exp"] = int(time.time()) + max(1, int(expires_in))
        payload_raw = _b64url_encode(json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8"))
        signature = _b64url_encode(hmac.new(self._secret, payload_raw.encode("ascii"), hashlib.sha256).digest())
        return f"{payload_raw}.{signature}"

    def _key_for(self, path: str) -> str:
        key = _clean_key(path)
        if not key:
            raise ValueError("object path must not be empty")
        if self._prefix:
            return f"{self._prefix}/{key}"
        return key

    def _path_for(self, bucket: str, key: str) -> Path:
        return self._root / bucket / key


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def create_signed_download_url(
        self,
        *,
        path: str,
        expires_in: int,
        download: bool = True,
        bucket: str | None = None,
    ) -> str:
        key = self._key_for(path)
        params: dict[str, Any] = {"Bucket": bucket or self._bucket, "Key": key}
        if download:
            file_name = key.rsplit("/", 1)[-1].replace('"', "")
            params["ResponseContentDisposition"] = f'attachment; filename="{file_name}"'
        return self._client.generate_presigned_url("get_object", Params=params, ExpiresIn=int(expires_in))

    def create_signed_upload_url(
        self,
        *,
        path: str,
        expires_in: int = DEFAULT_UPLOAD_TTL_S,
        content_type: str | None = None,
        bucket: str | None = None,
    ) -> dict[str, str]:
        bucket_name = bucket or self._bucket
        key = self._key_for(path)
        self._client.head_bucket(Bucket=bucket_name)
        params: dict[str, Any] = {"Bucket": bucket_name, "Key": key}
        if content_type:
            params["ContentType"] = content_type
        url = self._client.generate_presigned_url("put_object", Params=params, ExpiresIn=int(expires_in))
        query = parse_qs(urlsplit(url).query)
        token = (query.get("X-Amz-Signature") or query.get("Signature") or [""])[0]
        return {"url": url, "token": token, "path": key}

    def _key_for(self, path: str) -> str:
        key = _clean_key(path)
        if not key:
            raise ValueError("object path must not be empty")
        if self._prefix:
            return f"{self._prefix}/{key}"
        return key


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("PORTAL_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "vault").strip() or "vault",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/portal-object-storage").strip() or "/tmp/portal-object-storage",
        prefix=env.get("OBJECT_STORAGE_PREFIX", "").strip(),
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=env.get("OBJECT_STORAGE_FORCE_PATH_STYLE", "true").strip().lower()
        not in {"0", "false", "no", "off"},
        public_base_url=env.get("OBJECT_STORAGE_PUBLIC_BASE_URL", "http://127.0.0.1:8000/storage").strip()
        or "http://127.0.0.1:8000/storage",
        signing_secret=env.get("OBJECT_STORAGE_SIGNING_SECRET", "local-dev-signing-secret").strip(),
    )
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    return LocalObjectStorage(config=config)
