"""Tagged provider registry that builds adapters per merchant and call.

Adapters are constructed fresh on every `resolve`: credentials may change
between calls after a disconnect/reconnect, so nothing is pooled.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from paylink.common.config import settings
from paylink.common.crypto import SecretDecryptionError
from paylink.common.errors import NotConfigured, NotFound
from paylink.common.logging import logger
from paylink.services.gateways.adapters import ChapaAdapter, GatewayAdapter, SantimPayAdapter
from paylink.services.gateways.credentials import has_credential, load_secret
from paylink.services.gateways.models import Merchant


class CredentialModel(str, Enum):
    PLATFORM = "platform"
    MERCHANT = "merchant"


@dataclass(frozen=True)
class GatewayRegistration:
    """One provider variant: how it authenticates and how to build it."""

    name: str
    credentials: CredentialModel
    # Receives the decrypted merchant secret, or None for platform providers.
    factory: Callable[[str | None], GatewayAdapter]
    platform_ready: Callable[[], bool] = lambda: True


def default_registrations() -> list[GatewayRegistration]:
    return [
        GatewayRegistration(
            name="santimpay",
            credentials=CredentialModel.PLATFORM,
            factory=lambda _secret: SantimPayAdapter(
                merchant_id=settings.santimpay_merchant_id,
                private_key=settings.santimpay_private_key,
                testbed=settings.santimpay_testbed,
            ),
            platform_ready=lambda: bool(settings.santimpay_merchant_id and settings.santimpay_private_key),
        ),
        GatewayRegistration(
            name="chapa",
            credentials=CredentialModel.MERCHANT,
            factory=lambda secret: ChapaAdapter(secret_key=secret or ""),
        ),
    ]


class GatewayRegistry:
    """Resolves `(merchant, provider)` into a ready-to-use adapter."""

    def __init__(
        self,
        session_factory,
        registrations: list[GatewayRegistration] | None = None,
        failover: dict[str, str] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self._registrations: dict[str, GatewayRegistration] = {}
        for registration in registrations if registrations is not None else default_registrations():
            self.register(registration)
        self.failover = dict(settings.gateway_failover if failover is None else failover)

    def register(self, registration: GatewayRegistration) -> None:
        self._registrations[registration.name] = registration

    def providers(self) -> list[str]:
        return sorted(self._registrations)

    def _registration(self, provider: str) -> GatewayRegistration:
        registration = self._registrations.get(provider)
        if registration is None:
            raise NotConfigured(f"Unsupported gateway: {provider}", provider=provider)
        return registration

    def _load_merchant(self, db, merchant_id: str) -> Merchant:
        merchant = db.get(Merchant, merchant_id)
        if merchant is None:
            raise NotFound(f"merchant {merchant_id} not found")
        if merchant.status != "active":
            raise NotConfigured(f"merchant {merchant_id} is {merchant.status}")
        return merchant

    def is_ready(self, merchant_id: str, provider: str) -> bool:
        """Cheap readiness check that never decrypts anything."""

        registration = self._registrations.get(provider)
        if registration is None:
            return False
        if registration.credentials is CredentialModel.PLATFORM:
            return registration.platform_ready()
        with self.session_factory() as db:
            return has_credential(db, merchant_id, provider)

    def resolve(self, merchant_id: str, provider: str) -> GatewayAdapter:
        registration = self._registration(provider)
        secret = None
        with self.session_factory() as db:
            self._load_merchant(db, merchant_id)
            if registration.credentials is CredentialModel.PLATFORM:
                if not registration.platform_ready():
                    raise NotConfigured(f"{provider} platform credentials are not configured", provider=provider)
            else:
                try:
                    secret = load_secret(db, merchant_id, provider)
                except SecretDecryptionError as exc:
                    raise NotConfigured(f"{provider} secret cannot be decrypted", provider=provider) from exc
                except ValueError as exc:
                    # Missing or malformed encryption key.
                    raise NotConfigured(f"{provider} secret cannot be read: {exc}", provider=provider) from exc
        try:
            return registration.factory(secret)
        except ValueError as exc:
            raise NotConfigured(f"{provider} adapter cannot be built: {exc}", provider=provider) from exc

    def resolve_for_checkout(self, merchant_id: str, preferred: str) -> GatewayAdapter:
        """Resolve the preferred provider, falling back before any checkout exists."""

        try:
            return self.resolve(merchant_id, preferred)
        except NotConfigured as primary_error:
            fallback = self.failover.get(preferred)
            if not fallback or fallback == preferred or not self.is_ready(merchant_id, fallback):
                raise
            logger.warning(
                "gateway failover merchant_id=%s from=%s to=%s reason=%s",
                merchant_id,
                preferred,
                fallback,
                primary_error.message,
            )
            return self.resolve(merchant_id, fallback)
