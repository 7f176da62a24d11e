"""
Response models for the Brandgraph Identity API
"""
from typing import List, Optional

from brandgraph.models.requests import CamelModel


class BrandModel(CamelModel):
    id: str
    name: Optional[str] = None
    slug: Optional[str] = None


class CustomerModel(CamelModel):
    id: str
    email: Optional[str] = None
    internal_session_id: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[str] = None


class SessionModel(CamelModel):
    id: str
    internal_session_id: str
    braze_session: Optional[str] = None
    amplitude_session: Optional[str] = None
    email: Optional[str] = None
    brand_id: Optional[str] = None
    created_at: Optional[str] = None
    last_seen_at: Optional[str] = None


class LoyaltyMetricsModel(CamelModel):
    total_sessions: int
    total_brands: int
    cross_brand_activity: bool
    last_activity: Optional[str] = None
    last_brand: Optional[BrandModel] = None


class IdentifyResponse(CamelModel):
    internal_session_id: str
    customer: Optional[CustomerModel] = None
    session: SessionModel


class CustomerSessionResponse(CamelModel):
    customer: Optional[CustomerModel] = None
    session: SessionModel


class ResolvedSessionResponse(CamelModel):
    """status: anonymous (no customer), linked, stitched"""
    status: str
    session: SessionModel
    customer: Optional[CustomerModel] = None
    brand: Optional[BrandModel] = None


class SessionMatchResponse(CamelModel):
    session: Optional[SessionModel] = None
    customer: CustomerModel
    brand: Optional[BrandModel] = None


class CustomerWithSessionsResponse(CamelModel):
    customer: CustomerModel
    sessions: List[SessionModel]
    brands: List[BrandModel]


class CustomerSessionsResponse(CamelModel):
    customer: CustomerModel
    sessions: List[SessionModel]


class LoyaltyProfileResponse(CamelModel):
    customer: CustomerModel
    sessions: List[SessionModel]
    brands: List[BrandModel]
    loyalty_metrics: LoyaltyMetricsModel


class CustomerActivityResponse(CamelModel):
    customer: CustomerModel
    loyalty_metrics: LoyaltyMetricsModel
