"""
Identity Controller - HTTP route handlers

Error mapping
- ValidationError / MissingLinkAttribute -> 400
- not found (operation returned None) -> 404
- RelinkConflict -> 409
- RepositoryError -> 503 when the graph store is unreachable, else 500
"""
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional

from fastapi import HTTPException

from brandgraph.core.errors import RelinkConflict, RepositoryError, ValidationError
from brandgraph.core.identity_model import LoyaltyFilters
from brandgraph.models.requests import (
    BrandRequest,
    CustomerSessionRequest,
    IdentifyRequest,
    InternalSessionRequest,
    LinkExternalSessionRequest,
    LinkInternalSessionRequest,
    LinkLoginRequest,
)
from brandgraph.services.identity_service import IdentityResolver
from brandgraph.services.loyalty_service import LoyaltyService

logger = logging.getLogger(__name__)


@contextmanager
def http_errors(action: str):
    """Translate resolver errors into HTTPException"""
    try:
        yield
    except HTTPException:
        raise
    except RelinkConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RepositoryError as e:
        if e.unavailable:
            raise HTTPException(status_code=503, detail=f"Identity graph unavailable: {e.cause}")
        raise HTTPException(status_code=500, detail=f"Failed to {action}: {str(e)}")
    except Exception as e:
        logger.exception("Unexpected error while trying to %s", action)
        raise HTTPException(status_code=500, detail=f"Failed to {action}: {str(e)}")


def found(result, what: str):
    if result is None:
        raise HTTPException(status_code=404, detail=f"{what} not found")
    return result


class IdentityController:
    """Controller for identity endpoints"""

    def __init__(self, resolver: IdentityResolver, loyalty_service: LoyaltyService):
        self.resolver = resolver
        self.loyalty_service = loyalty_service

    def upsert_brand(self, request: BrandRequest) -> Dict:
        """POST /identity/brand"""
        with http_errors("upsert brand"):
            return self.resolver.upsert_brand(request.id, request.name, request.slug)

    def find_brand(self, brand_id: str) -> Dict:
        """GET /identity/brand/{brand_id}"""
        with http_errors("find brand"):
            return found(self.resolver.find_brand(brand_id), f"Brand {brand_id}")

    def identify(self, request: IdentifyRequest) -> Dict:
        """POST /identity/identify"""
        with http_errors("identify session"):
            return self.resolver.identify(
                provider=request.provider,
                external_session_id=request.external_session_id,
                brand_id=request.brand_id,
                internal_session_id=request.internal_session_id,
                email=request.email
            )

    def link_on_login(self, request: LinkLoginRequest) -> Dict:
        """POST /identity/link-login"""
        with http_errors("link login"):
            result = self.resolver.link_on_login(
                provider=request.provider,
                external_session_id=request.external_session_id,
                brand_id=request.brand_id,
                email=request.email,
                phone=request.phone,
                customer_id=request.customer_id,
                internal_session_id=request.internal_session_id
            )
            return found(result, "Customer")

    def create_internal_session(self, request: InternalSessionRequest) -> Dict:
        """POST /identity/internal-session"""
        with http_errors("create internal session"):
            return self.resolver.create_internal_session(request.internal_session_id, request.brand_id)

    def create_or_update_customer_session(self, request: CustomerSessionRequest) -> Dict:
        """POST /identity/customer-session"""
        with http_errors("create customer session"):
            return self.resolver.create_or_update_customer_session(**self._session_fields(request))

    def update_customer_session(self, request: CustomerSessionRequest) -> Dict:
        """POST /identity/update-customer-session"""
        with http_errors("update customer session"):
            result = self.resolver.update_customer_session(**self._session_fields(request))
            return found(result, f"Session {request.internal_session_id}")

    def get_customer_for_session(self, provider: str, external_session_id: str) -> Dict:
        """GET /identity/customer-for-session"""
        with http_errors("get customer for session"):
            return found(self.resolver.get_customer_for_session(provider, external_session_id), "Session")

    def quick_identify_customer(self, internal_session_id: str) -> Dict:
        """GET /identity/quick-identify-customer, /identity/quick-identify-internal"""
        with http_errors("identify session"):
            return found(self.resolver.quick_identify_customer(internal_session_id), f"Session {internal_session_id}")

    def quick_identify_external(self, provider: str, external_session_id: str, brand_id: Optional[str] = None) -> Dict:
        """GET /identity/quick-identify-external"""
        with http_errors("identify session"):
            result = self.resolver.quick_identify_external(provider, external_session_id, brand_id)
            return found(result, "Session")

    def get_customer_session(self, internal_session_id: str) -> Dict:
        """GET /identity/customer-session"""
        with http_errors("get customer session"):
            return found(self.resolver.get_customer_session(internal_session_id), f"Session {internal_session_id}")

    def find_customer_by_session(
        self,
        internal_session_id: Optional[str] = None,
        braze_session: Optional[str] = None,
        amplitude_session: Optional[str] = None,
        email: Optional[str] = None
    ) -> Dict:
        """GET /identity/find-customer-by-session"""
        with http_errors("find customer by session"):
            result = self.resolver.find_customer_by_session(
                internal_session_id=internal_session_id,
                braze_session=braze_session,
                amplitude_session=amplitude_session,
                email=email
            )
            return found(result, "Customer")

    def find_customer_by_any_session(
        self,
        provider: Optional[str] = None,
        external_session_id: Optional[str] = None,
        internal_session_id: Optional[str] = None
    ) -> Dict:
        """GET /identity/find-customer"""
        with http_errors("find customer"):
            result = self.resolver.find_customer_by_any_session(provider, external_session_id, internal_session_id)
            return found(result, "Customer")

    def find_customer_by_email(self, email: str) -> Dict:
        """GET /identity/customer-by-email"""
        with http_errors("find customer by email"):
            return found(self.resolver.find_customer_by_email(email), f"Customer {email}")

    def link_external_session(self, request: LinkExternalSessionRequest) -> Dict:
        """POST /identity/link-external-session"""
        with http_errors("link external session"):
            return self.resolver.link_external_session_to_customer(
                request.email, request.provider, request.external_session_id, request.brand_id
            )

    def link_internal_session(self, request: LinkInternalSessionRequest) -> Dict:
        """POST /identity/link-internal-session"""
        with http_errors("link internal session"):
            return self.resolver.link_internal_session_to_customer(
                request.email, request.internal_session_id, request.brand_id
            )

    def link_internal_to_existing(self, request: LinkInternalSessionRequest) -> Dict:
        """POST /identity/link-internal-to-existing"""
        with http_errors("stitch sessions"):
            return self.resolver.link_internal_to_existing_sessions(
                request.email, request.internal_session_id, request.brand_id
            )

    def get_customer_with_sessions(self, email: str) -> Dict:
        """GET /identity/customer-with-sessions"""
        with http_errors("get customer sessions"):
            return found(self.resolver.get_customer_with_sessions(email), f"Customer {email}")

    def get_customer_latest_session(self, email: str) -> Dict:
        """GET /identity/customer-latest-session"""
        with http_errors("get latest session"):
            return found(self.resolver.get_customer_latest_session(email), f"Latest session for {email}")

    def get_all_customers_with_sessions(self) -> List[Dict]:
        """GET /identity/all-customers-sessions"""
        with http_errors("list customers"):
            return self.resolver.get_all_customers_with_sessions()

    def get_customer_loyalty_profile(
        self,
        email: Optional[str] = None,
        internal_session_id: Optional[str] = None
    ) -> Dict:
        """GET /identity/customer-loyalty-profile"""
        with http_errors("build loyalty profile"):
            result = self.loyalty_service.get_customer_loyalty_profile(email, internal_session_id)
            return found(result, "Customer")

    def get_all_customers_activity(
        self,
        cross_brand_only: bool = False,
        min_sessions: Optional[int] = None,
        min_brands: Optional[int] = None
    ) -> List[Dict]:
        """GET /identity/all-customers-activity"""
        with http_errors("list customer activity"):
            filters = LoyaltyFilters(cross_brand_only, min_sessions, min_brands)
            return self.loyalty_service.get_all_customers_activity(filters)

    @staticmethod
    def _session_fields(request: CustomerSessionRequest) -> Dict:
        return {
            'internal_session_id': request.internal_session_id,
            'email': request.email,
            'braze_session': request.braze_session,
            'amplitude_session': request.amplitude_session,
            'brand_id': request.brand_id,
        }
