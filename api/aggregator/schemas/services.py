from datetime import datetime

from pydantic import BaseModel, Field


class ServiceDescriptorOut(BaseModel):
    id: str
    name: str
    logo_square_url: str | None = None


class ProviderDescriptorOut(BaseModel):
    id: str
    name: str
    logo_square_url: str | None = None
    auth_url: str | None = None
    services: list[ServiceDescriptorOut] = Field(default_factory=list)


class ProviderAccountOut(BaseModel):
    provider_id: str
    account_id: str
    service_ids: list[str] = Field(default_factory=list)
    state: str
    name: str | None = None
    account_name: str | None = None
    image_url: str | None = None
    last_error_message: str | None = None
    last_error_at: datetime | None = None


class ProviderListingOut(BaseModel):
    descriptor: ProviderDescriptorOut
    accounts: list[ProviderAccountOut] = Field(default_factory=list)
