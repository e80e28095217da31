"""
Provider credentials.

Keys come from the environment (first matching variable wins), then the
provider's public default key when it has one. Providers with a registered
refresher hold short-lived tokens that can be renewed once after an auth
failure; the interactive login flow that first issues those tokens lives
outside this package.
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Mapping, Optional

from .errors import ErrorKind, FatalProviderError
from .provider_catalog import ProviderCatalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    provider_id: str
    api_key: Optional[str]
    source: str
    refreshable: bool = False
    expires_at: Optional[float] = None

    @property
    def fingerprint(self) -> str:
        if not self.api_key:
            return "none"
        return hashlib.sha256(self.api_key.encode("utf-8")).hexdigest()[:12]

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or time.time()) >= self.expires_at

    def __repr__(self) -> str:  # keep keys out of logs and tracebacks
        return (
            f"Credentials(provider_id={self.provider_id!r}, source={self.source!r}, "
            f"fingerprint={self.fingerprint!r}, refreshable={self.refreshable})"
        )


TokenRefresher = Callable[[Credentials], Awaitable[Credentials]]


class CredentialStore:
    """Looks up and refreshes credentials per provider."""

    def __init__(
        self,
        catalog: ProviderCatalog,
        *,
        environ: Optional[Mapping[str, str]] = None,
        refreshers: Optional[Dict[str, TokenRefresher]] = None,
    ) -> None:
        self.catalog = catalog
        self._environ = environ
        self._refreshers: Dict[str, TokenRefresher] = dict(refreshers or {})
        self._overrides: Dict[str, Credentials] = {}

    def register_refresher(self, provider_id: str, refresher: TokenRefresher) -> None:
        self._refreshers[provider_id] = refresher

    def set_credentials(self, credentials: Credentials) -> None:
        self._overrides[credentials.provider_id] = credentials

    def can_refresh(self, provider_id: str) -> bool:
        return provider_id in self._refreshers

    def get(self, provider_id: str, *, required: bool = True) -> Credentials:
        override = self._overrides.get(provider_id)
        if override is not None:
            return override

        env = os.environ if self._environ is None else self._environ
        provider = self.catalog.get(provider_id)
        refreshable = provider_id in self._refreshers
        if provider is not None:
            for name in provider.api_key_env:
                value = env.get(name)
                if value:
                    return Credentials(provider_id, value, f"env:{name}", refreshable=refreshable)
            if provider.default_api_key:
                return Credentials(provider_id, provider.default_api_key, "default", refreshable=refreshable)

        if required:
            names = ", ".join(provider.api_key_env) if provider is not None else ""
            hint = f"; set {names}" if names else ""
            raise FatalProviderError(
                f"No API key configured for provider '{provider_id}'{hint}",
                kind=ErrorKind.AUTH,
                provider_id=provider_id,
            )
        return Credentials(provider_id, None, "none", refreshable=refreshable)

    async def refresh(self, provider_id: str) -> Credentials:
        refresher = self._refreshers.get(provider_id)
        if refresher is None:
            raise FatalProviderError(
                f"Credentials for provider '{provider_id}' cannot be refreshed",
                kind=ErrorKind.AUTH,
                provider_id=provider_id,
            )
        current = self.get(provider_id, required=False)
        logger.info("refreshing credentials for %s", provider_id)
        refreshed = await refresher(current)
        self._overrides[provider_id] = refreshed
        return refreshed
