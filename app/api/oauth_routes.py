"""AdPulse — OAuth Connect Routes."""

from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.sync_routes import get_service
from app.core.errors import SyncError, Unsupported
from app.core.logging import get_logger
from app.models.integration_models import Provider
from app.services.sync_service import SyncService

logger = get_logger("api.oauth")

router = APIRouter(prefix="/oauth", tags=["OAuth"])


def _provider(value: str) -> str:
    try:
        return Provider.parse(value).value
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _extra(shop: Optional[str], customer_id: Optional[str], ad_account_id: Optional[str]) -> Dict[str, str]:
    extra = {"shop": shop, "customer_id": customer_id, "ad_account_id": ad_account_id}
    return {k: v for k, v in extra.items() if v}


@router.get("/{provider}/authorize")
async def authorize(
    provider: str,
    tenant_id: str = Query(..., min_length=1),
    shop: Optional[str] = Query(None, description="Shopify shop domain (*.myshopify.com)"),
    service: SyncService = Depends(get_service),
):
    """Consent URL for the provider; the tenant id travels as ``state``."""
    provider = _provider(provider)
    try:
        url = service.authorization_url(provider, tenant_id, _extra(shop, None, None))
    except (ValueError, Unsupported) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"provider": provider, "authorization_url": url}


@router.get("/{provider}/callback")
async def callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None, description="Tenant id from /authorize"),
    error: Optional[str] = Query(None, description="Set by the provider when consent is refused"),
    error_description: Optional[str] = Query(None),
    shop: Optional[str] = Query(None),
    customer_id: Optional[str] = Query(None, description="Google Ads customer to connect"),
    ad_account_id: Optional[str] = Query(None, description="Meta ad account to connect"),
    service: SyncService = Depends(get_service),
):
    """Exchange the code and create (or re-authorize) the integration."""
    provider = _provider(provider)
    if error:
        logger.warning(
            f"OAuth declined by provider: {error}",
            extra={"provider": provider, "tenant_id": state},
        )
        reason = f"{error}: {error_description}" if error_description else error
        raise HTTPException(status_code=400, detail=f"{provider} authorization declined ({reason})")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state parameter")

    try:
        integration = await service.complete_oauth(
            provider, state, code, _extra(shop, customer_id, ad_account_id)
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SyncError as e:
        logger.error(f"OAuth callback failed: {e}", extra={"provider": provider, "tenant_id": state})
        raise HTTPException(status_code=502, detail=f"{provider} authorization failed: {e}")

    return {
        "status": "connected",
        "integration_id": integration.id,
        "tenant_id": integration.tenant_id,
        "provider": integration.provider,
        "external_account_id": integration.external_account_id,
        "external_account_name": integration.external_account_name,
    }
