"""
Loyalty Aggregation Service

Cross-brand activity of a customer, derived from its sessions.
- totalSessions: distinct sessions linked to the customer
- totalBrands: distinct brands reached through FOR_BRAND edges
- crossBrandActivity: totalBrands > 1
- lastActivity / lastBrand: from the most recently seen session
"""

import logging
from typing import Dict, List, Optional

from brandgraph.core.errors import ValidationError
from brandgraph.core.identity_model import (
    Brand,
    IdentityHelper,
    LoyaltyFilters,
    LoyaltyMetrics,
    Session,
    latest_first,
)
from brandgraph.core.result_shaper import to_plain
from brandgraph.repositories.identity_repository import IdentityRepository
from brandgraph.repositories.profile_cache_repository import ProfileCacheRepository

logger = logging.getLogger(__name__)


def compute_loyalty_metrics(sessions: List[Session], brands: Dict[str, Optional[Brand]]) -> LoyaltyMetrics:
    """
    Args:
        sessions: the customer's sessions
        brands: internalSessionId -> Brand (None for sessions without a brand)
    """
    if not sessions:
        return LoyaltyMetrics()

    distinct_brands = {b.id for b in brands.values() if b is not None}
    latest = latest_first(sessions)[0]

    return LoyaltyMetrics(
        total_sessions=len({s.internal_session_id for s in sessions}),
        total_brands=len(distinct_brands),
        cross_brand_activity=len(distinct_brands) > 1,
        last_activity=latest.last_seen_at,
        last_brand=brands.get(latest.internal_session_id)
    )


class LoyaltyService:
    """Loyalty profiles and the all-customers activity listing"""

    def __init__(self, identity_repo: IdentityRepository, profile_cache: Optional[ProfileCacheRepository] = None):
        self.repo = identity_repo
        self.profile_cache = profile_cache

    def get_customer_loyalty_profile(
        self,
        email: Optional[str] = None,
        internal_session_id: Optional[str] = None
    ) -> Optional[Dict]:
        """
        Resolve the customer by email or by one of its sessions.

        Returns:
            {'customer', 'sessions', 'brands', 'loyaltyMetrics'}, or None when
            no customer resolves.
        """
        email = IdentityHelper.normalize_email(email)
        if not (email or internal_session_id):
            raise ValidationError("Provide email or internalSessionId")

        if email:
            cached = self._cached(email)
            if cached is not None:
                return cached

        with self.repo.unit_of_work() as uow:
            if email:
                customer = self.repo.find_customer(uow, email=email)
            else:
                customer = self.repo.customer_for_session(uow, internal_session_id)
            if customer is None:
                return None

            sessions = self.repo.sessions_for_customer(uow, customer)
            brands = self.repo.brands_for_sessions(uow, sessions)

        distinct_brands = {b.id: b for b in brands.values() if b is not None}
        profile = to_plain({
            'customer': customer,
            'sessions': sessions,
            'brands': list(distinct_brands.values()),
            'loyaltyMetrics': compute_loyalty_metrics(sessions, brands),
        })

        self._store(customer.email, profile)
        return profile

    def get_all_customers_activity(self, filters: Optional[LoyaltyFilters] = None) -> List[Dict]:
        """Every customer with its metrics, most active first"""
        filters = filters or LoyaltyFilters()
        activity = []

        with self.repo.unit_of_work() as uow:
            for customer in self.repo.all_customers(uow):
                sessions = self.repo.sessions_for_customer(uow, customer)
                metrics = compute_loyalty_metrics(sessions, self.repo.brands_for_sessions(uow, sessions))
                if filters.accepts(metrics):
                    activity.append((customer, metrics))

        activity.sort(key=lambda item: (item[1].total_brands, item[1].total_sessions), reverse=True)
        return [to_plain({'customer': c, 'loyaltyMetrics': m}) for c, m in activity]

    def _cached(self, email: str) -> Optional[Dict]:
        if self.profile_cache is None:
            return None
        try:
            return self.profile_cache.get_profile(email)
        except Exception as e:
            logger.warning("Loyalty profile cache read failed for %s: %s", email, e)
            return None

    def _store(self, email: str, profile: Dict) -> None:
        if self.profile_cache is None:
            return
        try:
            self.profile_cache.store_profile(email, profile)
        except Exception as e:
            logger.warning("Loyalty profile cache write failed for %s: %s", email, e)
