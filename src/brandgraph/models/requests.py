"""
Request models for the Brandgraph Identity API

Wire format is camelCase (internalSessionId, brazeSession, ...); attributes
are snake_case. Linking attributes (email, phone, customerId) are optional
here and checked by the resolver, so a login without any of them is a 400.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BrandRequest(CamelModel):
    id: str = Field(..., min_length=1, description="Brand id (canonical key)")
    name: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)

    model_config = ConfigDict(
        json_schema_extra={"example": {"id": "brand-a", "name": "Brand A", "slug": "brand-a"}}
    )


class IdentifyRequest(CamelModel):
    """
    Anonymous session from an external provider.

    Identity Resolution
    - internalSessionId defaults to provider:externalSessionId:brandId
    - never creates a customer
    """
    provider: str = Field(..., description="braze, amplitude or internal")
    external_session_id: str = Field(..., min_length=1, description="Provider session id")
    brand_id: Optional[str] = Field(None, description="Brand the session ran under")
    internal_session_id: Optional[str] = Field(None, description="Override the derived internal id")
    email: Optional[str] = Field(None, description="Denormalized onto the session only")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "provider": "braze",
                "externalSessionId": "braze-abc-123",
                "brandId": "brand-a"
            }
        }
    )


class LinkLoginRequest(CamelModel):
    """Login event; needs at least one of email, phone, customerId"""
    provider: str
    external_session_id: str = Field(..., min_length=1)
    brand_id: Optional[str] = None
    email: Optional[str] = Field(None, description="Canonical customer key")
    phone: Optional[str] = Field(None, description="Links only to an existing customer")
    customer_id: Optional[str] = Field(None, description="Links only to an existing customer")
    internal_session_id: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "provider": "braze",
                "externalSessionId": "braze-abc-123",
                "brandId": "brand-a",
                "email": "user@example.com"
            }
        }
    )


class CustomerSessionRequest(CamelModel):
    """Session keyed by internalSessionId, optionally linked by email"""
    internal_session_id: str = Field(..., min_length=1)
    email: Optional[str] = None
    braze_session: Optional[str] = None
    amplitude_session: Optional[str] = None
    brand_id: Optional[str] = None


class InternalSessionRequest(CamelModel):
    internal_session_id: str = Field(..., min_length=1)
    brand_id: Optional[str] = None


class LinkExternalSessionRequest(CamelModel):
    email: Optional[str] = None
    provider: str
    external_session_id: str = Field(..., min_length=1)
    brand_id: Optional[str] = None


class LinkInternalSessionRequest(CamelModel):
    email: Optional[str] = None
    internal_session_id: str = Field(..., min_length=1)
    brand_id: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "email": "user@example.com",
                "internalSessionId": "web-5f2c",
                "brandId": "brand-b"
            }
        }
    )
