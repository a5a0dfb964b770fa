from fastapi import APIRouter, Depends, HTTPException, status

from aggregator.core.auth import RequestContext
from aggregator.core.security import get_human_principal
from aggregator.schemas.services import (
    ProviderAccountOut,
    ProviderDescriptorOut,
    ProviderListingOut,
    ServiceDescriptorOut,
)
from aggregator.services.accounts import ProviderListing, get_account_registry
from aggregator.services.repository import RecordStoreUnavailableError

router = APIRouter()


@router.get("", response_model=list[ProviderListingOut])
async def list_services(
    principal=Depends(get_human_principal),
    accounts=Depends(get_account_registry),
) -> list[ProviderListingOut]:
    try:
        principal.require_scopes({"services:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        listings = await accounts.list_provider_listings(RequestContext.for_principal(principal), principal.subject)
    except RecordStoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [_listing_to_out(listing) for listing in listings]


def _listing_to_out(listing: ProviderListing) -> ProviderListingOut:
    descriptor = listing.descriptor
    return ProviderListingOut(
        descriptor=ProviderDescriptorOut(
            id=descriptor.id,
            name=descriptor.name,
            logo_square_url=descriptor.logo_square_url,
            auth_url=descriptor.auth_url,
            services=[
                ServiceDescriptorOut(id=service.id, name=service.name, logo_square_url=service.logo_square_url)
                for service in descriptor.services
            ],
        ),
        accounts=[
            ProviderAccountOut(
                provider_id=account.provider_id,
                account_id=account.account_id,
                service_ids=list(account.service_ids),
                state=account.state.value,
                name=account.name,
                account_name=account.account_name,
                image_url=account.image_url,
                last_error_message=account.last_error_message,
                last_error_at=account.last_error_at,
            )
            for account in listing.accounts
        ],
    )
