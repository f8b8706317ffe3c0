"""
Provider credential lifecycle.

The CredentialManager is the only component that creates or discards
provider credentials. Provider clients ask it for the current bearer value
and report authentication rejections back through invalidate().

Generators:
- APNsTokenGenerator: ES256 JWT signed with the .p8 key (PyJWT + cryptography)
- FCMTokenGenerator: OAuth2 access token minted from the service account
  through firebase_admin.credentials.Certificate
- ExpoTokenGenerator: optional static access token
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from firebase_admin import credentials as firebase_credentials

from pushgate.core.metrics import record_credential_refresh
from pushgate.services.push.constants import (
    FCM_SCOPE,
    FCM_TOKEN_REFRESH_MARGIN_SECONDS,
    JWT_ALGORITHM,
    JWT_REFRESH_MARGIN_SECONDS,
    JWT_TOKEN_LIFETIME_SECONDS,
    PROVIDER_APNS,
    PROVIDER_EXPO,
    PROVIDER_FCM,
)
from pushgate.services.push.exceptions import ConfigurationError
from pushgate.services.push.models import (
    APNSConfig,
    FCMConfig,
    ProviderCredential,
)

logger = logging.getLogger(__name__)


class APNsTokenGenerator:
    """
    Generates APNS provider tokens.

    Apple accepts a token for one hour and rejects refreshing it more than
    once every 20 minutes, so tokens are reused until 50 minutes old.
    """

    provider = PROVIDER_APNS

    def __init__(self, config: APNSConfig, clock: Callable[[], float] = time.time):
        self.config = config
        self._clock = clock
        self._private_key: Optional[ec.EllipticCurvePrivateKey] = None

    def _load_private_key(self) -> ec.EllipticCurvePrivateKey:
        """Load private key from .p8 file."""
        if self._private_key is None:
            key_path = Path(self.config.key_file)
            if not key_path.exists():
                raise ConfigurationError(f"APNS key file not found: {key_path}", PROVIDER_APNS)

            try:
                private_key = serialization.load_pem_private_key(
                    key_path.read_bytes(),
                    password=None,
                )
            except ValueError as e:
                raise ConfigurationError(f"APNS key file is not a valid PEM key: {e}", PROVIDER_APNS) from e

            if not isinstance(private_key, ec.EllipticCurvePrivateKey):
                raise ConfigurationError("APNS key must be an EC private key (ES256)", PROVIDER_APNS)

            self._private_key = private_key
            logger.debug(f"Loaded APNS private key from {key_path}")

        return self._private_key

    async def generate(self) -> ProviderCredential:
        now = self._clock()
        issued_at = int(now)

        token = jwt.encode(
            {"iss": self.config.team_id, "iat": issued_at},
            self._load_private_key(),
            algorithm=JWT_ALGORITHM,
            headers={"kid": self.config.key_id},
        )

        issued = datetime.fromtimestamp(issued_at, tz=timezone.utc)
        logger.debug(
            "Generated new APNS JWT",
            extra={
                "team_id": self.config.team_id,
                "key_id": self.config.key_id,
                "expires_in": JWT_TOKEN_LIFETIME_SECONDS,
            }
        )
        return ProviderCredential(
            provider=PROVIDER_APNS,
            material=token,
            issued_at=issued,
            expires_at=issued + timedelta(seconds=JWT_TOKEN_LIFETIME_SECONDS),
            refresh_at=issued + timedelta(seconds=JWT_TOKEN_LIFETIME_SECONDS - JWT_REFRESH_MARGIN_SECONDS),
        )


class FCMTokenGenerator:
    """
    Mints OAuth2 bearer tokens for the FCM HTTP v1 API.

    google-auth performs a blocking token exchange, so the call runs in a
    worker thread.
    """

    provider = PROVIDER_FCM

    def __init__(self, config: FCMConfig):
        self.config = config
        self._certificate: Optional[firebase_credentials.Certificate] = None

    def _get_certificate(self) -> firebase_credentials.Certificate:
        if self._certificate is None:
            creds_path = Path(self.config.credentials_path)
            if not creds_path.exists():
                raise ConfigurationError(f"FCM credentials file not found: {creds_path}", PROVIDER_FCM)
            try:
                self._certificate = firebase_credentials.Certificate(str(creds_path))
            except (ValueError, OSError) as e:
                raise ConfigurationError(f"Invalid FCM service account file: {e}", PROVIDER_FCM) from e
            logger.info(
                "FCM service account loaded",
                extra={"project_id": self.config.project_id, "scope": FCM_SCOPE},
            )
        return self._certificate

    async def generate(self) -> ProviderCredential:
        certificate = self._get_certificate()
        token_info = await asyncio.to_thread(certificate.get_access_token)

        issued = datetime.now(timezone.utc)
        expiry = token_info.expiry
        if expiry is None:
            expiry = issued + timedelta(hours=1)
        elif expiry.tzinfo is None:
            # google-auth reports naive UTC
            expiry = expiry.replace(tzinfo=timezone.utc)

        return ProviderCredential(
            provider=PROVIDER_FCM,
            material=token_info.access_token,
            issued_at=issued,
            expires_at=expiry,
            refresh_at=expiry - timedelta(seconds=FCM_TOKEN_REFRESH_MARGIN_SECONDS),
        )


class ExpoTokenGenerator:
    """Static Expo access token. An empty value means unauthenticated sends."""

    provider = PROVIDER_EXPO

    def __init__(self, access_token: Optional[str] = None):
        self._access_token = access_token or ""

    async def generate(self) -> ProviderCredential:
        return ProviderCredential(provider=PROVIDER_EXPO, material=self._access_token)


class CredentialManager:
    """
    Caches one credential per provider and regenerates it on demand.

    Regeneration is single-flight: concurrent callers that find the cache
    empty or stale wait on the provider's lock, then reuse whatever the first
    caller produced.

    Usage:
        manager = CredentialManager({
            "apns": APNsTokenGenerator(apns_config),
            "fcm": FCMTokenGenerator(fcm_config),
        })
        jwt_token = await manager.get_credential("apns")
    """

    def __init__(self, generators: Optional[Dict[str, Any]] = None):
        self._generators: Dict[str, Any] = dict(generators or {})
        self._cache: Dict[str, ProviderCredential] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def register(self, provider: str, generator: Any) -> None:
        self._generators[provider] = generator
        self._cache.pop(provider, None)

    def has_provider(self, provider: str) -> bool:
        return provider in self._generators

    def _lock_for(self, provider: str) -> asyncio.Lock:
        lock = self._locks.get(provider)
        if lock is None:
            lock = self._locks[provider] = asyncio.Lock()
        return lock

    def _usable(self, provider: str) -> Optional[ProviderCredential]:
        cached = self._cache.get(provider)
        if cached is not None and not cached.is_stale():
            return cached
        return None

    async def get_credential(self, provider: str) -> str:
        """
        Return the current bearer material for a provider.

        Raises:
            ConfigurationError: No generator for the provider, or generation failed
        """
        cached = self._usable(provider)
        if cached is not None:
            return cached.material

        generator = self._generators.get(provider)
        if generator is None:
            raise ConfigurationError(f"No credentials configured for {provider}", provider)

        async with self._lock_for(provider):
            cached = self._usable(provider)
            if cached is not None:
                return cached.material

            credential = await self._generate(provider, generator)
            return credential.material

    async def _generate(self, provider: str, generator: Any) -> ProviderCredential:
        try:
            credential = await generator.generate()
        except ConfigurationError:
            record_credential_refresh(provider, "error")
            raise
        except Exception as e:
            record_credential_refresh(provider, "error")
            logger.error(
                f"Failed to generate {provider} credential: {e}",
                exc_info=True,
                extra={"provider": provider, "error_type": type(e).__name__},
            )
            raise ConfigurationError(f"{provider} credential generation failed: {e}", provider) from e

        self._cache[provider] = credential
        record_credential_refresh(provider, "success")
        logger.info(
            f"{provider} credential refreshed",
            extra={
                "provider": provider,
                "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
            },
        )
        return credential

    def invalidate(self, provider: str, material: Optional[str] = None) -> bool:
        """
        Drop the cached credential after the provider rejected it.

        When material is given, only that exact credential is dropped, so a
        late 403 for an old token does not discard its fresh replacement.

        Returns:
            True if a cached credential was removed
        """
        cached = self._cache.get(provider)
        if cached is None:
            return False
        if material is not None and cached.material != material:
            return False
        del self._cache[provider]
        logger.warning(
            f"{provider} credential invalidated",
            extra={"provider": provider},
        )
        return True

    async def refresh_all(self) -> Dict[str, bool]:
        """
        Proactively regenerate every stale or missing credential.

        Errors are logged per provider; one broken provider does not stop the
        others from refreshing.

        Returns:
            Mapping of provider to whether it now holds a usable credential
        """
        results: Dict[str, bool] = {}
        for provider, generator in self._generators.items():
            if self._usable(provider) is not None:
                results[provider] = True
                continue
            async with self._lock_for(provider):
                if self._usable(provider) is not None:
                    results[provider] = True
                    continue
                try:
                    await self._generate(provider, generator)
                    results[provider] = True
                except ConfigurationError as e:
                    logger.error(
                        f"Scheduled {provider} credential refresh failed: {e}",
                        extra={"provider": provider},
                    )
                    results[provider] = False
        return results

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Per-provider cache state for diagnostics (never the material itself)."""
        report: Dict[str, Dict[str, Any]] = {}
        for provider in self._generators:
            cached = self._cache.get(provider)
            report[provider] = {
                "cached": cached is not None,
                "stale": cached.is_stale() if cached else None,
                "issued_at": cached.issued_at.isoformat() if cached else None,
                "expires_at": cached.expires_at.isoformat() if cached and cached.expires_at else None,
            }
        return report
