"""Per-merchant gateway secret storage (encrypted at rest)."""

from sqlalchemy import delete, select

from paylink.common.crypto import decrypt_secret, encrypt_secret
from paylink.common.db import utcnow
from paylink.common.errors import InvalidRequest, NotConfigured, NotFound
from paylink.common.logging import logger
from paylink.services.gateways.models import GatewayCredential, Merchant


def connect_gateway(db, merchant_id: str, provider: str, plain_secret: str) -> GatewayCredential:
    """Encrypt and store (or replace) the merchant's secret for `provider`."""

    if not plain_secret or not plain_secret.strip():
        raise InvalidRequest("secret is required")
    if db.get(Merchant, merchant_id) is None:
        raise NotFound(f"merchant {merchant_id} not found")

    encrypted = encrypt_secret(plain_secret.strip())
    credential = db.execute(
        select(GatewayCredential).where(
            GatewayCredential.merchant_id == merchant_id,
            GatewayCredential.provider == provider,
        )
    ).scalar_one_or_none()
    if credential is None:
        credential = GatewayCredential(merchant_id=merchant_id, provider=provider, secret_encrypted=encrypted)
        db.add(credential)
    else:
        credential.secret_encrypted = encrypted
        credential.connected_at = utcnow()
    logger.info("gateway connected merchant_id=%s provider=%s", merchant_id, provider)
    return credential


def disconnect_gateway(db, merchant_id: str, provider: str) -> bool:
    result = db.execute(
        delete(GatewayCredential).where(
            GatewayCredential.merchant_id == merchant_id,
            GatewayCredential.provider == provider,
        )
    )
    removed = result.rowcount > 0
    if removed:
        logger.info("gateway disconnected merchant_id=%s provider=%s", merchant_id, provider)
    return removed


def has_credential(db, merchant_id: str, provider: str) -> bool:
    return (
        db.execute(
            select(GatewayCredential.credential_id).where(
                GatewayCredential.merchant_id == merchant_id,
                GatewayCredential.provider == provider,
            )
        ).scalar_one_or_none()
        is not None
    )


def load_secret(db, merchant_id: str, provider: str) -> str:
    """Decrypt the stored secret; the plaintext must not outlive the caller."""

    credential = db.execute(
        select(GatewayCredential).where(
            GatewayCredential.merchant_id == merchant_id,
            GatewayCredential.provider == provider,
        )
    ).scalar_one_or_none()
    if credential is None:
        raise NotConfigured(f"{provider} secret not configured for merchant", provider=provider)
    return decrypt_secret(credential.secret_encrypted)
