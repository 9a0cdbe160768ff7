"""
Token Service: OAuth token refresh and Amazon Ads client construction.
Clients are always built for an explicit profile; there is no default account.
"""

import logging
from datetime import datetime, timedelta, timezone
import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from autopilot.ads_api import AmazonAdsClient, create_ads_client
from autopilot.config import get_settings
from autopilot.crypto import decrypt_secret, encrypt_secret
from autopilot.exceptions import CredentialError
from autopilot.models import Credential, CredentialStatus
from autopilot.utils import utcnow

logger = logging.getLogger(__name__)

TOKEN_URL = "https://api.amazon.com/auth/o2/token"

# Refresh 5 minutes before actual expiry to avoid race conditions
REFRESH_BUFFER = timedelta(minutes=5)


async def refresh_access_token(
    client_id: str,
    client_secret: str,
    refresh_token: str,
) -> dict:
    """
    Exchange a refresh token for a new access token via Amazon LwA.
    Returns dict with access_token, expires_in, token_type.
    """
    async with httpx.AsyncClient() as client:
        response = await client.post(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=30,
        )
        response.raise_for_status()
        return response.json()


def _token_is_expired(cred: Credential, now: datetime) -> bool:
    if not cred.token_expires_at:
        return cred.client_secret is not None and cred.refresh_token is not None
    expires_at = cred.token_expires_at
    if expires_at.tzinfo is not None:
        expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
    return now >= expires_at - REFRESH_BUFFER


async def ensure_fresh_token(cred: Credential, db: AsyncSession) -> Credential:
    """
    Refresh the access token when it is about to expire. A refresh that
    Amazon rejects marks the credential expired; the caller decides what
    to do with a profile it can no longer write to.
    """
    if not cred.client_secret or not cred.refresh_token:
        return cred
    if not _token_is_expired(cred, utcnow()):
        return cred

    logger.info(f"Token expired for profile {cred.profile_id}, refreshing...")
    try:
        token_data = await refresh_access_token(
            client_id=cred.client_id,
            client_secret=decrypt_secret(cred.client_secret),
            refresh_token=decrypt_secret(cred.refresh_token),
        )
    except httpx.HTTPStatusError as e:
        logger.error(f"Token refresh failed for profile {cred.profile_id}: {e.response.status_code} {e.response.text}")
        cred.status = CredentialStatus.EXPIRED.value
        await db.flush()
        raise CredentialError(f"Token refresh rejected for profile {cred.profile_id}; reconnect required") from e
    except httpx.HTTPError as e:
        # Transient: keep the current token, it may still be accepted.
        logger.warning(f"Token refresh for profile {cred.profile_id} did not complete: {e}")
        return cred

    cred.access_token = encrypt_secret(token_data["access_token"])
    expires_in = token_data.get("expires_in", 3600)
    cred.token_expires_at = utcnow() + timedelta(seconds=expires_in)
    cred.status = CredentialStatus.ACTIVE.value
    if "refresh_token" in token_data:
        cred.refresh_token = encrypt_secret(token_data["refresh_token"])
    await db.flush()
    logger.info(f"Token refreshed for profile {cred.profile_id}, expires in {expires_in}s")
    return cred


async def get_credential_for_profile(db: AsyncSession, profile_id: str) -> Credential:
    if not profile_id:
        raise CredentialError("profile_id is required")
    result = await db.execute(select(Credential).where(Credential.profile_id == str(profile_id)))
    cred = result.scalar_one_or_none()
    if not cred:
        raise CredentialError(f"No Amazon Ads credential stored for profile {profile_id}")
    if cred.status == CredentialStatus.EXPIRED.value:
        raise CredentialError(f"Credential for profile {profile_id} is expired; reconnect required")
    return cred


async def get_ads_client_for_profile(db: AsyncSession, profile_id: str) -> AmazonAdsClient:
    """Main entry point: an Amazon Ads client with a fresh token, scoped to profile_id."""
    cred = await get_credential_for_profile(db, profile_id)
    cred = await ensure_fresh_token(cred, db)
    return create_ads_client(
        client_id=cred.client_id,
        access_token=decrypt_secret(cred.access_token),
        profile_id=cred.profile_id,
        region=cred.region or "na",
        timeout=get_settings().ads_api_timeout_seconds,
    )
