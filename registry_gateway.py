"""Registry Gateway – prefix-routed reverse proxy backed by a key-value registry.

Backends are not configured locally.  They are fetched on demand from an
external registry, cached for a short TTL and matched against inbound paths
by longest prefix.  Requests are spread round-robin across the healthy
backends that share a prefix, and each forwarded request carries the
backend's own credential, which the registry stores AES-GCM encrypted.

Gateway features:
- Registry cache with TTL and single in-flight refresh (request coalescing)
- Longest-prefix routing with per-prefix round robin over healthy backends
- On-demand and optional periodic health probing (consecutive-failure threshold)
- Ephemeral bearer sessions for the management API (login / logout / expiry)
- Lenient credential decryption (falls back to the stored value)
- CORS, security headers, request IDs and response timing on every response
- Login rate limiting and audit logging of security events
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
import sys
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional
from urllib.parse import quote

import httpx
import uvicorn
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field, ValidationError, field_validator

# ── Logging ───────────────────────────────────────────────────────────────────────────

LOG = logging.getLogger("gateway")

# ── Version ───────────────────────────────────────────────────────────────────────────

__version__ = "1.0.0"

SERVICE_NAME = "Registry Gateway"
PROXIED_BY = "registry-gateway"

# Paths under this namespace are never proxied, even when a backend owns "/".
RESERVED_PREFIX = "/gateway"


# ── Settings ──────────────────────────────────────────────────────────────────────────


@dataclass
class GatewaySettings:
    registry_url: str
    api_key: str
    encryption_key: str = ""
    port: int = 8080
    cache_ttl_seconds: float = 30.0
    token_ttl_seconds: float = 3600.0
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    health_check_timeout_seconds: float = 5.0
    fail_threshold: int = 3
    health_check_interval_seconds: float = 0.0
    proxy_timeout_seconds: float = 120.0
    registry_timeout_seconds: float = 10.0
    max_connections: int = 500
    max_keepalive: int = 200
    max_request_body_bytes: int = 10 * 1024 * 1024  # 10 MB
    login_rate_limit_rpm: int = 60


# ── Custom Exceptions ───────────────────────────────────────────────────────────────


class ConfigurationError(Exception):
    """Required configuration is missing or invalid; fatal at startup."""


class RegistryUnavailable(Exception):
    """The registry answered with a non-success status or could not be reached."""


class GatewayError(Exception):
    """Base exception for request-scoped errors surfaced to the client."""

    status_code = 500
    error = "Internal error"

    def __init__(self, detail: str, error: Optional[str] = None, **extra: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        if error:
            self.error = error
        self.extra = extra

    def response_headers(self) -> dict[str, str]:
        return {}


class BadRequest(GatewayError):
    status_code = 400
    error = "Invalid request body"


class Unauthorized(GatewayError):
    status_code = 401
    error = "Unauthorized"

    def response_headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class RouteNotFound(GatewayError):
    status_code = 404
    error = "No backend found"


class RateLimited(GatewayError):
    status_code = 429
    error = "Too many requests"


class UpstreamError(GatewayError):
    status_code = 502
    error = "Backend error"


# ── Helpers ───────────────────────────────────────────────────────────────────────────

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

_HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "transfer-encoding", "upgrade",
}


def now_iso() -> str:
    """Return current UTC time in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def generate_request_id() -> str:
    """Generate a unique request ID for correlation."""
    return str(uuid.uuid4())


def parse_bearer_token(value: Optional[str]) -> str:
    """Extract bearer token from Authorization header (scheme is case-insensitive)."""
    if not value:
        return ""
    parts = value.strip().split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time to prevent timing attacks."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def normalize_base_url(value: str) -> str:
    """Normalize and validate a base URL."""
    url = (value or "").strip().rstrip("/")
    if not url:
        raise ValueError("base_url is required")
    if not (url.startswith("http://") or url.startswith("https://")):
        raise ValueError("base_url must start with http:// or https://")
    return url


def normalize_prefix(prefix: str) -> str:
    """Ensure a leading slash and drop one trailing slash unless the prefix is root."""
    p = (prefix or "").strip()
    if not p.startswith("/"):
        p = "/" + p
    if p.endswith("/") and len(p) > 1:
        p = p[:-1]
    return p


def strip_prefix(path: str, prefix: str) -> str:
    """Remove a normalized prefix from the start of ``path`` for forwarding."""
    if not path.startswith(prefix):
        return path
    remaining = path[len(prefix):]
    if not remaining:
        return "/"
    return remaining if remaining.startswith("/") else "/" + remaining


def join_url(base: str, path: str) -> str:
    """Join base URL and path safely."""
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def build_target_url(base: str, path: str, query: str = "") -> str:
    url = base.rstrip("/") + path
    return f"{url}?{query}" if query else url


def is_reserved_path(path: str) -> bool:
    return path == RESERVED_PREFIX or path.startswith(RESERVED_PREFIX + "/")


def raw_request_path(request: Request) -> str:
    """Request path exactly as received, percent-escapes intact."""
    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    return raw.decode("latin-1").split("?", 1)[0]


def cors_headers(origin: Optional[str], allowed_origins: list[str]) -> dict[str, str]:
    """CORS headers for a response; echoes the origin only when it is allowed."""
    allowed = "*"
    if "*" not in allowed_origins and allowed_origins:
        allowed = origin if origin in allowed_origins else allowed_origins[0]
    return {
        "Access-Control-Allow-Origin": allowed,
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Request-ID",
        "Access-Control-Expose-Headers": "X-Request-ID, X-Backend-Name, X-Proxied-By, X-Response-Time",
    }


def error_response(
    status: int,
    error: str,
    message: str,
    request_id: str = "",
    headers: Optional[dict[str, str]] = None,
    **extra: Any,
) -> JSONResponse:
    """Return a JSON error body carrying at least an ``error`` field."""
    body: dict[str, Any] = {"error": error, "message": message}
    body.update(extra)
    if request_id:
        body["requestId"] = request_id
    return JSONResponse(body, status_code=status, headers=headers)


def build_upstream_headers(
    request: Request, backend: "Backend", request_id: str = ""
) -> dict[str, str]:
    """Copy inbound headers for the upstream call and inject the backend credential."""
    _blocked = {
        "host", "content-length", "authorization",
        "x-forwarded-for", "x-forwarded-host", "x-forwarded-proto", "x-request-id",
    }
    headers: dict[str, str] = {}
    for k, v in request.headers.items():
        lo = k.lower()
        if lo in _blocked or lo in _HOP_BY_HOP:
            continue
        headers[k] = v
    headers["Authorization"] = f"Bearer {backend.decrypted_token}"
    client_host = request.client.host if request.client else ""
    chain = [p for p in (request.headers.get("x-forwarded-for", ""), client_host) if p]
    headers["X-Forwarded-For"] = ", ".join(chain) or "unknown"
    headers["X-Forwarded-Host"] = request.headers.get("host", request.url.netloc)
    headers["X-Forwarded-Proto"] = request.url.scheme
    if request_id:
        headers["X-Request-ID"] = request_id
    return headers


# ── Bounded Sliding Window ────────────────────────────────────────────────────────


class SlidingWindow:
    """Bounded sliding window for rate/throughput tracking."""

    def __init__(
        self, window_seconds: float = 60.0, max_entries: int = 100_000
    ) -> None:
        self._window_seconds = window_seconds
        self._max_entries = max_entries
        self._entries: list[float] = []

    def add(self) -> None:
        self._entries.append(time.time())
        if len(self._entries) > self._max_entries:
            self._entries = self._entries[-self._max_entries:]

    def trim(self) -> None:
        cutoff = time.time() - self._window_seconds
        self._entries = [t for t in self._entries if t > cutoff]

    def count(self) -> int:
        self.trim()
        return len(self._entries)

    def count_per_second(self) -> float:
        c = self.count()
        return round(c / self._window_seconds, 1) if c else 0


# ── Rate Limiter ──────────────────────────────────────────────────────────────────


class RateLimiter:
    """Simple in-memory rate limiter using sliding window."""

    def __init__(self, rpm: int = 60) -> None:
        self._rpm = rpm
        self._window = SlidingWindow(window_seconds=60.0, max_entries=max(1, rpm * 2))

    def check(self) -> bool:
        if self._rpm <= 0:
            return True
        if self._window.count() >= self._rpm:
            return False
        self._window.add()
        return True

    @property
    def remaining(self) -> int:
        if self._rpm <= 0:
            return -1
        return max(0, self._rpm - self._window.count())


class LoginThrottle:
    """Per-client limit on failed login attempts; successful logins are free."""

    def __init__(self, rpm: int = 60, max_clients: int = 10_000) -> None:
        self._rpm = rpm
        self._max_clients = max_clients
        self._limiters: dict[str, RateLimiter] = {}

    def blocked(self, client: str) -> bool:
        limiter = self._limiters.get(client)
        return limiter is not None and limiter.remaining == 0

    def record_failure(self, client: str) -> None:
        if self._rpm <= 0:
            return
        if client not in self._limiters and len(self._limiters) >= self._max_clients:
            self._prune()
        self._limiters.setdefault(client, RateLimiter(self._rpm)).check()

    def _prune(self) -> None:
        idle = [c for c, lim in self._limiters.items() if lim.remaining == self._rpm]
        for c in idle:
            del self._limiters[c]


# ── Audit Logger ─────────────────────────────────────────────────────────────────


class AuditLogger:
    """Structured audit logging for security-relevant gateway events."""

    def __init__(self) -> None:
        self._log = logging.getLogger("gateway.audit")

    def log(
        self,
        action: str,
        request_id: str = "",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        entry: dict[str, Any] = {
            "timestamp": now_iso(),
            "action": action,
            "request_id": request_id,
        }
        if details:
            entry["details"] = details
        self._log.info(json.dumps(entry))


# ── Credential Cipher ────────────────────────────────────────────────────────────


class CredentialCipher:
    """Symmetric protection of backend credentials plus password/token helpers.

    Encrypted values are ``base64(salt || iv || ciphertext)`` where the
    ciphertext includes the 16-byte GCM tag.  The AES-256 key is derived per
    value with PBKDF2-HMAC-SHA256 from the shared secret and the embedded salt.

    Key derivation is deliberately slow; async callers should run
    :meth:`encrypt` and :meth:`decrypt` through ``asyncio.to_thread``.
    """

    SALT_BYTES = 16
    IV_BYTES = 12
    KEY_BYTES = 32
    KDF_ITERATIONS = 100_000

    def __init__(self, secret: str) -> None:
        self._secret = (secret or "").encode("utf-8")

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_BYTES,
            salt=salt,
            iterations=self.KDF_ITERATIONS,
        )
        return kdf.derive(self._secret)

    def encrypt(self, plaintext: str) -> str:
        salt = secrets.token_bytes(self.SALT_BYTES)
        iv = secrets.token_bytes(self.IV_BYTES)
        ciphertext = AESGCM(self._derive_key(salt)).encrypt(
            iv, plaintext.encode("utf-8"), None
        )
        return base64.b64encode(salt + iv + ciphertext).decode("ascii")

    def decrypt(self, encoded: str) -> str:
        """Decrypt ``encoded``; on any failure return it unchanged."""
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            LOG.warning("Credential is not valid base64 (%s), using stored value as-is", exc)
            return encoded
        header = self.SALT_BYTES + self.IV_BYTES
        if len(raw) <= header:
            LOG.warning("Credential too short to be encrypted (%d bytes), using stored value as-is", len(raw))
            return encoded
        salt, iv, data = raw[:self.SALT_BYTES], raw[self.SALT_BYTES:header], raw[header:]
        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(iv, data, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError) as exc:
            LOG.warning(
                "Credential decryption failed (%s), using stored value as-is",
                type(exc).__name__,
            )
            return encoded

    @staticmethod
    def hash_password(password: str) -> str:
        digest = hashlib.sha256(password.encode("utf-8")).digest()
        return base64.b64encode(digest).decode("ascii")

    @staticmethod
    def generate_secure_token() -> str:
        raw = base64.b64encode(secrets.token_bytes(32)).decode("ascii")
        return raw.translate(str.maketrans("", "", "+/="))


# ── Registry Client ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RegistryRecord:
    key: str
    data: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def deleted(self) -> bool:
        return any(
            str(part.get("status", "")).upper() == "DELETED"
            for part in (self.data, self.metadata)
        )


def parse_registry_records(payload: Any) -> list[RegistryRecord]:
    """Normalize any accepted registry response shape into records.

    Accepted shapes: ``{"items": [...]}``, a bare list of ``{key, data}``
    records, a single ``{key, data}`` record, or a mapping of
    ``key -> {"data": ...}``.  Soft-deleted records are dropped.
    """
    if isinstance(payload, dict) and isinstance(payload.get("items"), list):
        raw_items = payload["items"]
    elif isinstance(payload, list):
        raw_items = payload
    elif isinstance(payload, dict) and "key" in payload and "data" in payload:
        raw_items = [payload]
    elif isinstance(payload, dict):
        raw_items = [
            {"key": k, "data": v.get("data"), "metadata": v.get("metadata")}
            for k, v in payload.items()
            if isinstance(v, dict) and "data" in v
        ]
    else:
        raw_items = []

    records: list[RegistryRecord] = []
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        key, data = item.get("key"), item.get("data")
        if not key or not isinstance(data, dict):
            continue
        metadata = item.get("metadata")
        record = RegistryRecord(
            str(key), data, metadata if isinstance(metadata, dict) else {}
        )
        if record.deleted:
            LOG.debug("Ignoring soft-deleted registry record %s", record.key)
            continue
        records.append(record)
    return records


class RegistryClient:
    """Read access to the key-value registry holding backends and users."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    async def _get_json(self, path: str, allow_missing: bool = False) -> Any:
        try:
            r = await self._client().get(f"{self._base_url}{path}")
        except httpx.HTTPError as exc:
            raise RegistryUnavailable(f"GET {path} failed: {type(exc).__name__}: {exc}") from exc
        if allow_missing and r.status_code == 404:
            return None
        if not r.is_success:
            raise RegistryUnavailable(f"GET {path} returned HTTP {r.status_code}")
        try:
            return r.json()
        except ValueError as exc:
            raise RegistryUnavailable(f"GET {path} returned invalid JSON") from exc

    async def fetch_backends(self) -> list[RegistryRecord]:
        return parse_registry_records(await self._get_json("/collections/backend"))

    async def fetch_user(self, username: str) -> Optional[dict[str, Any]]:
        """Return the user's ``data`` mapping, or None when the user does not exist."""
        payload = await self._get_json(
            f"/collections/users/{quote(username, safe='')}", allow_missing=True
        )
        if not isinstance(payload, dict):
            return None
        data = payload.get("data")
        return data if isinstance(data, dict) else None

    async def fetch_users(self) -> list[RegistryRecord]:
        return parse_registry_records(await self._get_json("/collections/users"))


# ── Backend Cache ────────────────────────────────────────────────────────────────


@dataclass
class Backend:
    name: str
    url: str
    prefix: str
    encrypted_token: str
    decrypted_token: str
    healthy: bool = True
    consecutive_failures: int = 0
    last_check: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "prefix": self.prefix,
            "healthy": self.healthy,
            "consecutiveFailures": self.consecutive_failures,
            "lastCheck": (
                datetime.fromtimestamp(self.last_check, timezone.utc).isoformat()
                if self.last_check else None
            ),
        }


@dataclass(frozen=True)
class CacheSnapshot:
    """Backends by name plus the prefix index; replaced wholesale, never edited."""

    backends: dict[str, Backend] = field(default_factory=dict)
    routes: dict[str, tuple[str, ...]] = field(default_factory=dict)


class BackendCache:
    """TTL-bounded view of the registry's backends.

    At most one registry fetch runs at a time: callers that find the cache
    stale while a refresh is in flight await that same refresh.
    """

    def __init__(
        self,
        registry: RegistryClient,
        cipher: CredentialCipher,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._cipher = cipher
        self._ttl = ttl_seconds
        self._clock = clock
        self._snapshot = CacheSnapshot()
        self._last_refresh: Optional[float] = None
        self._inflight: Optional[asyncio.Future[None]] = None

    # -- read accessors --

    def snapshot(self) -> CacheSnapshot:
        return self._snapshot

    def get(self, name: str) -> Optional[Backend]:
        return self._snapshot.backends.get(name)

    def backends(self) -> list[Backend]:
        return list(self._snapshot.backends.values())

    def routing_table(self) -> dict[str, tuple[str, ...]]:
        return dict(self._snapshot.routes)

    def prefixes(self) -> list[str]:
        return list(self._snapshot.routes)

    @property
    def count(self) -> int:
        return len(self._snapshot.backends)

    @property
    def healthy_count(self) -> int:
        return sum(1 for b in self._snapshot.backends.values() if b.healthy)

    @property
    def last_refresh(self) -> Optional[float]:
        return self._last_refresh

    def is_fresh(self) -> bool:
        return (
            self._last_refresh is not None
            and self._clock() - self._last_refresh < self._ttl
        )

    # -- refresh --

    async def ensure_fresh(self) -> None:
        if self.is_fresh():
            return
        await self._join_refresh()

    async def force_refresh(self) -> int:
        """Reload regardless of TTL, still sharing any refresh already running."""
        await self._join_refresh()
        return self.count

    async def _join_refresh(self) -> None:
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._run_refresh())
        # shield: a cancelled caller must not cancel the refresh other callers share
        await asyncio.shield(self._inflight)

    async def _run_refresh(self) -> None:
        try:
            await self.refresh()
        finally:
            self._inflight = None

    async def refresh(self) -> int:
        """Fetch the registry and swap in a new snapshot; keep the old one on failure."""
        try:
            records = await self._registry.fetch_backends()
        except RegistryUnavailable as exc:
            LOG.error(
                "Backend refresh failed, serving %d cached backends: %s",
                self.count,
                exc,
            )
            return self.count

        previous = self._snapshot.backends
        backends: dict[str, Backend] = {}
        routes: dict[str, list[str]] = {}
        for rec in records:
            url = str(rec.data.get("url") or "").strip()
            token = str(rec.data.get("token") or "").strip()
            raw_prefix = str(rec.data.get("prefix") or "").strip()
            if not url or not token or not raw_prefix:
                LOG.warning("Skipping backend %s: url, token and prefix are required", rec.key)
                continue
            if rec.key in backends:
                LOG.warning("Duplicate backend key %s in registry response, keeping the first", rec.key)
                continue

            old = previous.get(rec.key)
            if old is not None and old.encrypted_token == token:
                decrypted = old.decrypted_token
            else:
                decrypted = await asyncio.to_thread(self._cipher.decrypt, token)

            prefix = normalize_prefix(raw_prefix)
            backend = Backend(
                name=rec.key,
                url=url.rstrip("/"),
                prefix=prefix,
                encrypted_token=token,
                decrypted_token=decrypted,
                metadata=dict(rec.metadata),
            )
            if old is not None:
                backend.healthy = old.healthy
                backend.consecutive_failures = old.consecutive_failures
                backend.last_check = old.last_check
            backends[rec.key] = backend
            routes.setdefault(prefix, []).append(rec.key)

        self._snapshot = CacheSnapshot(
            backends=backends,
            routes={p: tuple(names) for p, names in routes.items()},
        )
        self._last_refresh = self._clock()
        LOG.info("Loaded %d backends across %d prefixes", len(backends), len(routes))
        for prefix, names in routes.items():
            LOG.debug("  %s -> [%s]", prefix, ", ".join(names))
        return len(backends)

    # -- health bookkeeping --

    def record_probe(self, name: str, ok: bool, fail_threshold: int) -> Optional[Backend]:
        backend = self._snapshot.backends.get(name)
        if backend is None:
            return None
        backend.last_check = time.time()
        if ok:
            backend.consecutive_failures = 0
            backend.healthy = True
        else:
            backend.consecutive_failures += 1
            backend.healthy = backend.consecutive_failures < fail_threshold
            if not backend.healthy:
                LOG.warning(
                    "Backend %s marked unhealthy after %d consecutive failures",
                    name,
                    backend.consecutive_failures,
                )
        return backend


# ── Router ───────────────────────────────────────────────────────────────────────


class Router:
    """Longest-prefix match plus round robin over the healthy members.

    Ties between equally long matching prefixes go to the one enumerated
    last; with unique prefix strings only the root prefix can overlap another
    match, and it is always shorter.
    """

    def __init__(self, cache: BackendCache) -> None:
        self._cache = cache
        self._counters: dict[str, int] = {}

    @staticmethod
    def _matches(path: str, prefix: str) -> bool:
        return prefix == "/" or path == prefix or path.startswith(prefix + "/")

    @classmethod
    def _best_prefix(cls, routes: dict[str, tuple[str, ...]], path: str) -> Optional[str]:
        best: Optional[str] = None
        for prefix in routes:
            if cls._matches(path, prefix) and (best is None or len(prefix) >= len(best)):
                best = prefix
        return best

    def match_prefix(self, path: str) -> Optional[str]:
        return self._best_prefix(self._cache.snapshot().routes, path)

    def find_backend(self, path: str) -> Optional[Backend]:
        snap = self._cache.snapshot()
        prefix = self._best_prefix(snap.routes, path)
        if prefix is None:
            return None
        healthy = [
            snap.backends[name]
            for name in snap.routes[prefix]
            if name in snap.backends and snap.backends[name].healthy
        ]
        if not healthy:
            return None
        counter = self._counters.get(prefix, 0)
        self._counters[prefix] = counter + 1
        return healthy[counter % len(healthy)]


# ── Sessions ─────────────────────────────────────────────────────────────────────


@dataclass
class SessionToken:
    token: str
    created_at: float
    expires_at: float
    username: str = ""

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class SessionAuthenticator:
    """Issues, validates and revokes process-local bearer sessions.

    Sessions are never persisted; a restart logs everyone out.
    """

    def __init__(
        self,
        registry: RegistryClient,
        cipher: CredentialCipher,
        token_ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._cipher = cipher
        self._ttl = token_ttl_seconds
        self._clock = clock
        self._tokens: dict[str, SessionToken] = {}

    @property
    def token_ttl_seconds(self) -> float | int:
        return int(self._ttl) if float(self._ttl).is_integer() else self._ttl

    @property
    def active_count(self) -> int:
        return len(self._tokens)

    async def login(self, username: str, password: str) -> SessionToken:
        """Check credentials against the registry and issue a new session.

        Unknown users, wrong passwords and registry failures all raise the
        same :class:`Unauthorized` so callers cannot enumerate usernames.
        """
        try:
            user = await self._registry.fetch_user(username)
        except RegistryUnavailable as exc:
            LOG.error("User lookup failed for %s: %s", username, exc)
            raise Unauthorized("Invalid credentials") from exc
        stored = str((user or {}).get("passwordHash") or "")
        if not stored or not constant_time_compare(
            stored, self._cipher.hash_password(password)
        ):
            raise Unauthorized("Invalid credentials")

        now = self._clock()
        session = SessionToken(
            token=self._cipher.generate_secure_token(),
            created_at=now,
            expires_at=now + self._ttl,
            username=username,
        )
        self._tokens[session.token] = session
        self._sweep(now)
        return session

    def validate(self, authorization: Optional[str]) -> bool:
        token = parse_bearer_token(authorization)
        if not token:
            return False
        session = self._tokens.get(token)
        if session is None:
            return False
        if session.expired(self._clock()):
            del self._tokens[token]
            return False
        return True

    def logout(self, authorization: Optional[str]) -> bool:
        token = parse_bearer_token(authorization)
        if not token or token not in self._tokens:
            return False
        del self._tokens[token]
        return True

    def _sweep(self, now: float) -> None:
        expired = [t for t, s in self._tokens.items() if s.expired(now)]
        for t in expired:
            del self._tokens[t]


# ── Pydantic Models ───────────────────────────────────────────────────────────────


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=200)
    password: str = Field(min_length=1, max_length=1000)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("username must not be empty")
        return v


# ── Proxy Engine ─────────────────────────────────────────────────────────────────


class ProxyEngine:
    """Upstream side of the gateway: forwarding, health probing and throughput stats."""

    def __init__(
        self,
        cache: BackendCache,
        settings: GatewaySettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._health_task: Optional[asyncio.Task[None]] = None
        self._req_window = SlidingWindow(60.0, 100_000)
        self._total_requests = 0
        self._total_errors = 0
        self._start_time = time.time()

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            http2=True,
            timeout=self.settings.proxy_timeout_seconds,
            transport=self._transport,
            follow_redirects=False,
            limits=httpx.Limits(
                max_connections=self.settings.max_connections,
                max_keepalive_connections=self.settings.max_keepalive,
            ),
        )

    async def startup(self) -> None:
        self._client = self._make_client()
        self._start_time = time.time()
        interval = self.settings.health_check_interval_seconds
        if interval > 0:
            self._health_task = asyncio.create_task(self._health_loop(interval))
        LOG.info(
            "Engine started: max_connections=%d, max_keepalive=%d, health_interval=%.1fs",
            self.settings.max_connections,
            self.settings.max_keepalive,
            interval,
        )

    async def shutdown(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        LOG.info("Engine shutdown complete")

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("HTTP client not initialised")
        return self._client

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self._start_time

    # -- forwarding --

    async def forward(
        self, request: Request, backend: Backend, request_id: str = ""
    ) -> Response:
        raw_path = raw_request_path(request)
        path = strip_prefix(raw_path, backend.prefix)
        target = build_target_url(backend.url, path, request.url.query)
        headers = build_upstream_headers(request, backend, request_id)
        body = None
        if request.method not in ("GET", "HEAD"):
            body = await request.body()

        self._total_requests += 1
        self._req_window.add()
        LOG.info(
            "[%s] %s %s -> %s (%s)",
            request_id, request.method, raw_path, backend.name, target,
        )
        start = time.perf_counter()
        upstream_request = self.client.build_request(
            request.method, target, headers=headers, content=body
        )
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            self._total_errors += 1
            LOG.warning(
                "[%s] Error proxying to %s (%.0fms): %s: %s",
                request_id, backend.name, (time.perf_counter() - start) * 1000,
                type(exc).__name__, exc,
            )
            raise UpstreamError(
                f"{type(exc).__name__}: {exc}", backend=backend.name
            ) from exc

        LOG.info(
            "[%s] %d from %s (%.0fms)",
            request_id, upstream.status_code, backend.name,
            (time.perf_counter() - start) * 1000,
        )
        response = StreamingResponse(
            self._relay(upstream, backend.name, request_id),
            status_code=upstream.status_code,
        )
        for k, v in upstream.headers.multi_items():
            lo = k.lower()
            if lo in _HOP_BY_HOP or lo == "content-length":
                continue
            response.headers.append(k, v)
        response.headers["X-Proxied-By"] = PROXIED_BY
        response.headers["X-Backend-Name"] = backend.name
        return response

    async def _relay(
        self, upstream: httpx.Response, backend_name: str, request_id: str
    ) -> AsyncIterator[bytes]:
        # closing the generator (client went away) closes the upstream stream too
        try:
            try:
                async for chunk in upstream.aiter_raw():
                    yield chunk
            except httpx.StreamConsumed:
                # body was already read by the transport
                if upstream.content:
                    yield upstream.content
        except httpx.HTTPError as exc:
            self._total_errors += 1
            LOG.warning(
                "[%s] Upstream stream from %s broke: %s", request_id, backend_name, exc
            )
            raise
        finally:
            await upstream.aclose()

    # -- health probing --

    async def probe(self, backend: Backend) -> bool:
        """GET ``{url}/health`` within the probe timeout and record the outcome."""
        try:
            r = await self.client.get(
                join_url(backend.url, "/health"),
                headers={"Authorization": f"Bearer {backend.decrypted_token}"},
                timeout=self.settings.health_check_timeout_seconds,
            )
            ok = r.is_success
            if not ok:
                LOG.info("Health probe for %s returned HTTP %d", backend.name, r.status_code)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            LOG.info("Health probe for %s failed: %s: %s", backend.name, type(exc).__name__, exc)
            ok = False
        self.cache.record_probe(backend.name, ok, self.settings.fail_threshold)
        return ok

    async def probe_all(self) -> dict[str, bool]:
        await self.cache.ensure_fresh()
        backends = self.cache.backends()
        results = await asyncio.gather(*(self.probe(b) for b in backends))
        return {b.name: ok for b, ok in zip(backends, results)}

    async def _health_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                results = await self.probe_all()
                LOG.debug("Periodic health check: %s", results)
            except Exception:
                LOG.exception("Periodic health check failed")

    def stats(self) -> dict[str, Any]:
        return {
            "requests_per_second": self._req_window.count_per_second(),
            "total_requests_proxied": self._total_requests,
            "total_errors": self._total_errors,
            "uptime_seconds": round(self.uptime_seconds, 1),
        }


# ── App Factory ─────────────────────────────────────────────────────────────────


def _ms_env(name: str, default: int) -> float:
    return int(os.getenv(name, str(default))) / 1000.0


def load_settings() -> GatewaySettings:
    """Load settings from environment variables with validation."""
    registry_url = os.getenv("GATEWAY_REGISTRY_URL", "").strip()
    api_key = os.getenv("GATEWAY_API_KEY", "").strip()
    missing = [
        name
        for name, value in (
            ("GATEWAY_REGISTRY_URL", registry_url),
            ("GATEWAY_API_KEY", api_key),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(f"missing required settings: {', '.join(missing)}")
    try:
        registry_url = normalize_base_url(registry_url)
    except ValueError as exc:
        raise ConfigurationError(f"GATEWAY_REGISTRY_URL: {exc}") from exc

    cors_raw = os.getenv("GATEWAY_ALLOWED_ORIGINS", "*")
    cors = [o.strip() for o in cors_raw.split(",") if o.strip()] or ["*"]

    try:
        settings = GatewaySettings(
            registry_url=registry_url,
            api_key=api_key,
            encryption_key=os.getenv("GATEWAY_ENCRYPTION_KEY", ""),
            port=int(os.getenv("GATEWAY_PORT", "8080")),
            cache_ttl_seconds=max(0.0, _ms_env("GATEWAY_CACHE_TTL_MS", 30_000)),
            token_ttl_seconds=max(1.0, _ms_env("GATEWAY_TOKEN_TTL_MS", 3_600_000)),
            cors_origins=cors,
            log_level=os.getenv("GATEWAY_LOG_LEVEL", "INFO").upper(),
            health_check_timeout_seconds=max(
                0.5, float(os.getenv("GATEWAY_HEALTH_CHECK_TIMEOUT_SECONDS", "5"))
            ),
            fail_threshold=max(1, int(os.getenv("GATEWAY_FAIL_THRESHOLD", "3"))),
            health_check_interval_seconds=max(
                0.0, _ms_env("GATEWAY_HEALTH_CHECK_INTERVAL_MS", 0)
            ),
            proxy_timeout_seconds=max(
                1.0, float(os.getenv("GATEWAY_PROXY_TIMEOUT_SECONDS", "120"))
            ),
            registry_timeout_seconds=max(
                1.0, float(os.getenv("GATEWAY_REGISTRY_TIMEOUT_SECONDS", "10"))
            ),
            max_connections=max(10, int(os.getenv("GATEWAY_MAX_CONNECTIONS", "500"))),
            max_keepalive=max(10, int(os.getenv("GATEWAY_MAX_KEEPALIVE", "200"))),
            max_request_body_bytes=int(
                os.getenv("GATEWAY_MAX_REQUEST_BODY_BYTES", str(10 * 1024 * 1024))
            ),
            login_rate_limit_rpm=int(os.getenv("GATEWAY_LOGIN_RATE_LIMIT_RPM", "60")),
        )
    except ValueError as exc:
        raise ConfigurationError(f"invalid numeric setting: {exc}") from exc

    if not settings.encryption_key:
        LOG.warning(
            "GATEWAY_ENCRYPTION_KEY is not set - encrypted backend tokens will be used verbatim"
        )
    elif len(settings.encryption_key) < 32:
        LOG.warning(
            "GATEWAY_ENCRYPTION_KEY is short (%d chars) - use >=32",
            len(settings.encryption_key),
        )

    return settings


def create_app(
    settings: Optional[GatewaySettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    cfg = settings or load_settings()

    log_fmt = (
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        if cfg.log_level != "DEBUG"
        else "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
    )
    logging.basicConfig(level=cfg.log_level, format=log_fmt, stream=sys.stdout)

    cipher = CredentialCipher(cfg.encryption_key)
    registry = RegistryClient(
        cfg.registry_url, cfg.api_key,
        timeout=cfg.registry_timeout_seconds, transport=transport,
    )
    cache = BackendCache(registry, cipher, cfg.cache_ttl_seconds)
    router = Router(cache)
    sessions = SessionAuthenticator(registry, cipher, cfg.token_ttl_seconds)
    engine = ProxyEngine(cache, cfg, transport=transport)
    login_throttle = LoginThrottle(cfg.login_rate_limit_rpm)
    audit = AuditLogger()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await engine.startup()
        await cache.ensure_fresh()
        LOG.info(
            "%s v%s ready on port %s (registry=%s, backends=%d)",
            SERVICE_NAME, __version__, cfg.port, cfg.registry_url, cache.count,
        )
        try:
            yield
        finally:
            await engine.shutdown()
            await registry.close()

    app = FastAPI(
        title=SERVICE_NAME,
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = cfg
    app.state.cache = cache
    app.state.router = router
    app.state.sessions = sessions
    app.state.engine = engine

    # Request size limit middleware
    @app.middleware("http")
    async def body_size_middleware(request: Request, call_next):
        cl = request.headers.get("content-length", "")
        if cl.isdigit() and int(cl) > cfg.max_request_body_bytes:
            return error_response(
                413,
                "Request too large",
                f"Request body too large (max {cfg.max_request_body_bytes} bytes)",
                getattr(request.state, "request_id", ""),
            )
        return await call_next(request)

    def apply_gateway_headers(request: Request, response: Response, req_id: str) -> Response:
        response.headers.update(cors_headers(request.headers.get("origin"), cfg.cors_origins))
        response.headers.update(SECURITY_HEADERS)
        if req_id:
            response.headers["X-Request-ID"] = req_id
        return response

    # CORS preflight, CORS + security headers, request id and timing
    @app.middleware("http")
    async def gateway_headers_middleware(request: Request, call_next):
        req_id = request.headers.get("x-request-id", "") or generate_request_id()
        request.state.request_id = req_id
        start = time.perf_counter()
        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            response = await call_next(request)
        apply_gateway_headers(request, response, req_id)
        response.headers["X-Response-Time"] = f"{(time.perf_counter() - start) * 1000:.0f}ms"
        return response

    # Exception handlers
    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        req_id = getattr(request.state, "request_id", "")
        return error_response(
            exc.status_code, exc.error, exc.detail, req_id,
            headers=exc.response_headers(), **exc.extra,
        )

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        req_id = getattr(request.state, "request_id", "")
        return error_response(
            exc.status_code, "HTTP error", str(exc.detail), req_id, headers=exc.headers
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        req_id = getattr(request.state, "request_id", "") or request.headers.get("x-request-id", "")
        LOG.exception("Unhandled error: %s [req=%s]", exc, req_id)
        # runs outside the http middleware stack, so headers are added here
        return apply_gateway_headers(
            request,
            error_response(500, "Internal error", "internal server error", req_id),
            req_id,
        )

    # Auth dependency
    def require_session(authorization: Optional[str] = Header(None)) -> None:
        if not sessions.validate(authorization):
            raise Unauthorized(
                "Valid Bearer token required. Use POST /gateway/login to obtain a token."
            )

    def service_info() -> dict[str, Any]:
        return {
            "service": SERVICE_NAME,
            "version": __version__,
            "backends": cache.count,
            "healthy": cache.healthy_count,
            "routes": [
                {"name": b.name, "prefix": b.prefix, "url": b.url}
                for b in cache.backends()
            ],
            "activeTokens": sessions.active_count,
            "endpoints": {
                "login": "POST /gateway/login (public)",
                "health": "GET /gateway/health (public)",
                "logout": "POST /gateway/logout (requires token)",
                "status": "GET /gateway/status (requires token)",
                "routing": "GET /gateway/routing (requires token)",
                "backends": "GET /gateway/backends (requires token)",
                "users": "GET /gateway/users (requires token)",
                "reload": "POST /gateway/reload (requires token)",
                "healthCheck": "POST /gateway/health-check (requires token)",
                "info": "GET / (requires token)",
            },
        }

    # Routes: public
    @app.post("/gateway/login")
    async def login(request: Request):
        req_id = getattr(request.state, "request_id", "")
        client = request.client.host if request.client else "unknown"
        if login_throttle.blocked(client):
            raise RateLimited("too many failed logins, try again later")
        raw = await request.body()
        try:
            payload = LoginRequest.model_validate_json(raw or b"{}")
        except ValidationError:
            LOG.info("[%s] Invalid login request body", req_id)
            raise BadRequest("Expected a JSON body with username and password")
        try:
            session = await sessions.login(payload.username, payload.password)
        except Unauthorized:
            login_throttle.record_failure(client)
            audit.log("login_failed", req_id, {"username": payload.username, "client": client})
            raise
        audit.log("login_succeeded", req_id, {"username": payload.username})
        return JSONResponse({
            "token": session.token,
            "expiresIn": sessions.token_ttl_seconds,
            "tokenType": "Bearer",
        })

    @app.get("/gateway/health")
    async def health():
        return JSONResponse({
            "status": "ok",
            "timestamp": now_iso(),
            "version": __version__,
            "backends": cache.count,
            "healthy": cache.healthy_count,
        })

    # Routes: management
    @app.post("/gateway/logout", dependencies=[Depends(require_session)])
    async def logout(request: Request, authorization: Optional[str] = Header(None)):
        if not sessions.logout(authorization):
            raise Unauthorized("Invalid or missing token")
        audit.log("logout", getattr(request.state, "request_id", ""))
        return JSONResponse({"message": "Logout successful"})

    @app.get("/gateway/status", dependencies=[Depends(require_session)])
    async def status():
        await cache.ensure_fresh()
        backends = cache.backends()
        return JSONResponse({
            "total": len(backends),
            "healthy": sum(1 for b in backends if b.healthy),
            "backends": [b.summary() for b in backends],
            "activeTokens": sessions.active_count,
            "stats": engine.stats(),
        })

    @app.get("/gateway/routing", dependencies=[Depends(require_session)])
    async def routing():
        await cache.ensure_fresh()
        return JSONResponse({
            "routes": [
                {"prefix": prefix, "backends": list(names)}
                for prefix, names in cache.routing_table().items()
            ],
        })

    @app.get("/gateway/backends", dependencies=[Depends(require_session)])
    async def backends_detail():
        await cache.ensure_fresh()
        detail = [
            {
                "key": b.name,
                "name": b.name,
                "prefix": b.prefix,
                "url": b.url,
                "healthy": b.healthy,
                "hasToken": bool(b.encrypted_token),
                "tokenLength": len(b.encrypted_token),
            }
            for b in cache.backends()
        ]
        return JSONResponse({"backends": detail, "total": len(detail), "timestamp": now_iso()})

    @app.get("/gateway/users", dependencies=[Depends(require_session)])
    async def users():
        try:
            records = await registry.fetch_users()
        except RegistryUnavailable as exc:
            LOG.error("User listing failed: %s", exc)
            raise UpstreamError(str(exc), error="Failed to fetch users")
        listing = [
            {
                "username": rec.key,
                "email": rec.data.get("email"),
                "role": rec.data.get("role"),
                "active": rec.data.get("active"),
            }
            for rec in records
        ]
        return JSONResponse({"users": listing, "total": len(listing), "timestamp": now_iso()})

    @app.post("/gateway/reload", dependencies=[Depends(require_session)])
    async def reload(request: Request):
        count = await cache.force_refresh()
        audit.log("backends_reloaded", getattr(request.state, "request_id", ""), {"backends": count})
        return JSONResponse({
            "message": "Backends reloaded",
            "backends": count,
            "routes": [
                {"prefix": prefix, "backends": list(names)}
                for prefix, names in cache.routing_table().items()
            ],
        })

    @app.post("/gateway/health-check", dependencies=[Depends(require_session)])
    async def health_check(request: Request):
        results = await engine.probe_all()
        audit.log("health_check", getattr(request.state, "request_id", ""), {"results": results})
        return JSONResponse({
            "results": [
                {**b.summary(), "probeOk": results.get(b.name, False)}
                for b in cache.backends()
            ],
            "healthy": cache.healthy_count,
            "total": cache.count,
        })

    @app.get("/gateway", dependencies=[Depends(require_session)])
    async def info():
        await cache.ensure_fresh()
        return JSONResponse(service_info())

    # Routes: proxy, then authenticated fallbacks
    @app.api_route(
        "/{path:path}",
        methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"],
        include_in_schema=False,
    )
    async def dispatch(request: Request, authorization: Optional[str] = Header(None)):
        req_id = getattr(request.state, "request_id", "")
        path = request.url.path
        raw_path = raw_request_path(request)

        if not (is_reserved_path(path) or is_reserved_path(raw_path)):
            await cache.ensure_fresh()
            backend = router.find_backend(raw_path)
            if backend is not None:
                return await engine.forward(request, backend, req_id)
            prefix = router.match_prefix(raw_path)
            if prefix is not None:
                LOG.warning("[%s] No healthy backend for %s (prefix %s)", req_id, path, prefix)
                raise RouteNotFound(
                    f"All backends for prefix {prefix} are unhealthy",
                    error="No healthy backend",
                    path=path,
                    prefix=prefix,
                )

        if not sessions.validate(authorization):
            raise Unauthorized(
                "Valid Bearer token required. Use POST /gateway/login to obtain a token."
            )

        if path == "/" and request.method in ("GET", "HEAD"):
            return JSONResponse(service_info())

        raise RouteNotFound(
            f"No route configured for {path}",
            path=path,
            availablePrefixes=cache.prefixes(),
        )

    return app


if __name__ == "__main__":
    try:
        s = load_settings()
    except ConfigurationError as exc:
        logging.basicConfig(level="ERROR", stream=sys.stderr)
        LOG.error("Configuration error: %s", exc)
        sys.exit(1)
    uvicorn.run(
        "registry_gateway:create_app",
        factory=True,
        host="0.0.0.0",
        port=s.port,
        reload=False,
        log_level=s.log_level.lower(),
        access_log=True,
    )
