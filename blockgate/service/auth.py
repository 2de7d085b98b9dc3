from __future__ import annotations

import asyncio
import hashlib
import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Protocol

from blockgate.config import Settings
from blockgate.logging import get_logger
from blockgate.service.background import run_detached
from blockgate.service.errors import (
    AuthenticationError,
    InsufficientScopeError,
    ServerError,
)
from blockgate.storage.models import ServiceCredential, new_id, utcnow

logger = get_logger(__name__)

# Capabilities a service key can be granted
SCOPE_BLOCKS_EXECUTE = "blocks:execute"
SCOPE_BLOCKS_LIST = "blocks:list"
SCOPE_USERS_PROVISION = "users:provision"
SCOPE_USERS_READ = "users:read"
SCOPE_EXECUTIONS_READ = "executions:read"
SCOPE_EXECUTIONS_WRITE = "executions:write"

ALL_SCOPES = (
    SCOPE_BLOCKS_EXECUTE,
    SCOPE_BLOCKS_LIST,
    SCOPE_USERS_PROVISION,
    SCOPE_USERS_READ,
    SCOPE_EXECUTIONS_READ,
    SCOPE_EXECUTIONS_WRITE,
)

# Failure kinds reported in logs
MISSING_KEY = "missing_key"
INVALID_KEY = "invalid_key"
EXPIRED_KEY = "expired_key"
INACTIVE_KEY = "inactive_key"

KEY_PREFIX_DISPLAY_LENGTH = 16


class CredentialStore(Protocol):
    def get_service_credential_by_hash(
        self, key_hash: str, service_name: str
    ) -> Optional[ServiceCredential]: ...

    def touch_service_credential(self, credential_id: str, when: Optional[datetime] = None) -> None: ...

    def create_service_credential(self, credential: ServiceCredential) -> ServiceCredential: ...


@dataclass
class ServiceContext:
    """An authenticated caller system."""

    service_name: str
    key_id: str
    key_prefix: str
    scopes: List[str]
    rate_limit_per_minute: int
    rate_limit_per_day: int
    metadata: dict = field(default_factory=dict)

    def has_scope(self, scope: str) -> bool:
        return has_scope(self.scopes, scope)


def hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def key_prefix(raw_key: str) -> str:
    """Short unhashed prefix kept for audit display."""
    return raw_key[:KEY_PREFIX_DISPLAY_LENGTH]


def generate_service_key(prefix: str = "sim_svc_") -> str:
    return f"{prefix}{secrets.token_hex(32)}"


def has_scope(granted: Iterable[str], scope: str) -> bool:
    return scope in set(granted)


def has_all_scopes(granted: Iterable[str], required: Iterable[str]) -> bool:
    granted_set = set(granted)
    return all(scope in granted_set for scope in required)


def has_any_scope(granted: Iterable[str], required: Iterable[str]) -> bool:
    granted_set = set(granted)
    return any(scope in granted_set for scope in required)


def parse_scopes(raw: Any) -> List[str]:
    """Normalise a stored permission set into a list of scope strings.

    Stores have held the set as a list, a JSON-encoded list, or a JSON string
    that itself encodes a list.
    """
    value = raw
    for _ in range(2):
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                return []
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value if isinstance(item, str) and item]
    return []


def _positive_limit(value: Optional[int], default: int) -> int:
    if value is None:
        return default
    return int(value)


def _is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= now


class ServiceKeyAuthenticator:
    """Validates presented service keys against stored SHA-256 hashes."""

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    async def authenticate(
        self, raw_key: Optional[str], required_scopes: Iterable[str] = ()
    ) -> ServiceContext:
        required = list(required_scopes)
        if not raw_key:
            raise AuthenticationError("Missing service API key", reason=MISSING_KEY)
        if not raw_key.startswith(self.settings.service_key_prefix):
            logger.warning("service_key_bad_format", key_prefix=key_prefix(raw_key))
            raise AuthenticationError("Invalid service API key", reason=INVALID_KEY)

        digest = hash_key(raw_key)
        try:
            credential = await asyncio.to_thread(
                self.store.get_service_credential_by_hash,
                digest,
                self.settings.service_name,
            )
        except Exception as exc:
            logger.error(
                "service_key_lookup_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Authentication failed") from exc

        if credential is None:
            logger.warning("service_key_not_found", key_prefix=key_prefix(raw_key))
            raise AuthenticationError("Invalid service API key", reason=INVALID_KEY)
        if not credential.is_active:
            logger.warning("service_key_inactive", key_id=credential.id)
            raise AuthenticationError("Service API key is inactive", reason=INACTIVE_KEY)
        if _is_expired(credential.expires_at, utcnow()):
            logger.warning("service_key_expired", key_id=credential.id)
            raise AuthenticationError("Service API key has expired", reason=EXPIRED_KEY)

        scopes = parse_scopes(credential.scopes)
        if required:
            missing = [scope for scope in required if scope not in scopes]
            if missing:
                logger.warning(
                    "service_key_insufficient_scope",
                    key_id=credential.id,
                    required=required,
                    missing=missing,
                )
                raise InsufficientScopeError(required, missing)

        credential_id = credential.id
        run_detached(
            lambda: asyncio.to_thread(self.store.touch_service_credential, credential_id, utcnow()),
            "service_key_touch",
            key_id=credential_id,
        )

        return ServiceContext(
            service_name=credential.service_name,
            key_id=credential.id,
            key_prefix=credential.key_prefix,
            scopes=scopes,
            rate_limit_per_minute=_positive_limit(
                credential.rate_limit_per_minute, self.settings.default_rate_limit_per_minute
            ),
            rate_limit_per_day=_positive_limit(
                credential.rate_limit_per_day, self.settings.default_rate_limit_per_day
            ),
            metadata=dict(credential.metadata or {}),
        )

    def issue_key(
        self,
        name: str,
        scopes: Iterable[str],
        *,
        rate_limit_per_minute: Optional[int] = None,
        rate_limit_per_day: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        created_by_user_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> tuple[str, ServiceCredential]:
        """Mint a key and persist only its hash. The raw key is returned once."""
        scopes = list(scopes)
        unknown = [scope for scope in scopes if scope not in ALL_SCOPES]
        if unknown:
            raise ValueError(f"unknown scopes: {', '.join(unknown)}")
        raw_key = generate_service_key(self.settings.service_key_prefix)
        credential = ServiceCredential(
            id=new_id(),
            name=name,
            key_hash=hash_key(raw_key),
            key_prefix=key_prefix(raw_key),
            service_name=self.settings.service_name,
            scopes=scopes,
            rate_limit_per_minute=rate_limit_per_minute,
            rate_limit_per_day=rate_limit_per_day,
            expires_at=expires_at,
            created_by_user_id=created_by_user_id,
            metadata=metadata or {},
        )
        self.store.create_service_credential(credential)
        logger.info(
            "service_key_issued",
            key_id=credential.id,
            key_prefix=credential.key_prefix,
            scopes=credential.scopes,
        )
        return raw_key, credential
