"""
Identity Resolution Service

Identity Resolution
- Anonymous sessions (Braze, Amplitude) are created by identify and stay unlinked
- Logins link a session to the customer keyed by email (BELONGS_TO)
- Stitching connects an internal session to every external session of the customer
- Each public operation runs in exactly one unit of work
- Resolution steps are auditable
"""

import logging
from contextlib import contextmanager
from typing import Dict, List, Optional, Set
from uuid import uuid4

from brandgraph.core.errors import MissingLinkAttribute, RelinkConflict, ValidationError
from brandgraph.core.identity_model import (
    PROVIDER_LOOKUP_KEY,
    Customer,
    CustomerFields,
    IdentityHelper,
    LinkOutcome,
    LookupKey,
    Provider,
    RelinkPolicy,
    Session,
    SessionFields,
    SessionState,
)
from brandgraph.core.result_shaper import to_plain
from brandgraph.repositories.audit_repository import ResolutionAuditRepository, ResolutionStep
from brandgraph.repositories.graph_store import GraphUnitOfWork
from brandgraph.repositories.identity_repository import IdentityRepository
from brandgraph.repositories.profile_cache_repository import ProfileCacheRepository

logger = logging.getLogger(__name__)


class Resolution:
    """Steps taken by one mutating operation, plus the customers it touched"""

    def __init__(self, operation: str):
        self.resolution_id = f"res_{uuid4().hex[:12]}"
        self.operation = operation
        self.steps: List[ResolutionStep] = []
        self.touched_emails: Set[str] = set()

    def record(self, step: str, internal_session_id: Optional[str] = None, customer_email: Optional[str] = None):
        self.steps.append(ResolutionStep(step, internal_session_id, customer_email))
        if customer_email:
            self.touched_emails.add(customer_email)


class IdentityResolver:
    """
    Resolves sessions and logins to a single customer identity.

    Session keys:
    1. internalSessionId when the caller supplies one
    2. otherwise derived as provider:externalSessionId:brandId (stable, so
       repeated identify calls for the same visitor hit the same node)

    Link rules:
    - a link needs email, phone or customerId; email is the canonical key
    - a session belongs to at most one customer; a second customer is
      handled by the relink policy (REPOINT or REJECT)
    - login and internal links repoint LATEST_SESSION
    """

    def __init__(
        self,
        identity_repo: IdentityRepository,
        relink_policy: RelinkPolicy = RelinkPolicy.REPOINT,
        audit_repo: Optional[ResolutionAuditRepository] = None,
        profile_cache: Optional[ProfileCacheRepository] = None
    ):
        self.repo = identity_repo
        self.relink_policy = RelinkPolicy(relink_policy)
        self.audit_repo = audit_repo
        self.profile_cache = profile_cache

    # Brands

    def upsert_brand(self, brand_id: str, name: str, slug: str) -> Dict:
        """Create the brand or overwrite its name and slug"""
        self._require(brand_id, "id")
        self._require(name, "name")
        self._require(slug, "slug")

        with self._resolving("upsert_brand") as (resolution, uow):
            brand = self.repo.upsert_brand(uow, brand_id, name, slug)
            resolution.record(f"brand_upserted:{brand_id}")

        logger.info("Brand %s upserted", brand_id)
        return to_plain(brand)

    def find_brand(self, brand_id: str) -> Optional[Dict]:
        self._require(brand_id, "id")
        with self.repo.unit_of_work() as uow:
            return to_plain(self.repo.find_brand(uow, brand_id))

    # Anonymous sessions

    def identify(
        self,
        provider: str,
        external_session_id: str,
        brand_id: Optional[str] = None,
        internal_session_id: Optional[str] = None,
        email: Optional[str] = None
    ) -> Dict:
        """
        Record an external-provider session without linking it.

        Returns:
            {'internalSessionId': ..., 'customer': <linked customer or None>, 'session': ...}
        """
        provider = self._provider(provider)
        self._require(external_session_id, "externalSessionId")
        email = IdentityHelper.normalize_email(email)
        internal_id = internal_session_id or self._derived_session_id(provider, external_session_id, brand_id)

        with self._resolving("identify") as (resolution, uow):
            session = self.repo.upsert_session(
                uow, internal_id, SessionFields.for_provider(provider, external_session_id, brand_id, email)
            )
            customer = self.repo.customer_for_session(uow, internal_id)
            resolution.record("session_upserted", internal_id, customer.email if customer else None)

        return to_plain({'internalSessionId': internal_id, 'customer': customer, 'session': session})

    def create_internal_session(self, internal_session_id: str, brand_id: Optional[str] = None) -> Dict:
        """Record an internal session (e.g. first page view) without linking it"""
        self._require(internal_session_id, "internalSessionId")

        with self._resolving("create_internal_session") as (resolution, uow):
            session = self.repo.upsert_session(uow, internal_session_id, SessionFields(brand_id=brand_id))
            customer = self.repo.customer_for_session(uow, internal_session_id)
            resolution.record("session_upserted", internal_session_id, customer.email if customer else None)

        return to_plain(session)

    def create_or_update_customer_session(
        self,
        internal_session_id: str,
        email: Optional[str] = None,
        braze_session: Optional[str] = None,
        amplitude_session: Optional[str] = None,
        brand_id: Optional[str] = None
    ) -> Dict:
        """
        Upsert the session keyed by internalSessionId; when an email is
        supplied also upsert the customer, link and repoint LATEST_SESSION.

        Returns:
            {'customer': <customer or None>, 'session': ...}
        """
        self._require(internal_session_id, "internalSessionId")
        email = IdentityHelper.normalize_email(email)

        with self._resolving("create_or_update_customer_session") as (resolution, uow):
            if email:
                self._guard_relink(uow, internal_session_id, email)

            session = self.repo.upsert_session(
                uow,
                internal_session_id,
                SessionFields(email=email, braze_session=braze_session,
                              amplitude_session=amplitude_session, brand_id=brand_id)
            )
            resolution.record("session_upserted", internal_session_id)

            if email:
                customer = self.repo.upsert_customer(uow, email, CustomerFields(internal_session_id=internal_session_id))
                self._link(uow, resolution, internal_session_id, customer)
                self.repo.set_latest_session(uow, customer, internal_session_id)
            else:
                customer = self.repo.customer_for_session(uow, internal_session_id)
                if customer:
                    resolution.record("session_refreshed", internal_session_id, customer.email)

        return to_plain({'customer': customer, 'session': session})

    def update_customer_session(
        self,
        internal_session_id: str,
        email: Optional[str] = None,
        braze_session: Optional[str] = None,
        amplitude_session: Optional[str] = None,
        brand_id: Optional[str] = None
    ) -> Optional[Dict]:
        """Update an existing session (return visit). None if it was never seen."""
        self._require(internal_session_id, "internalSessionId")
        email = IdentityHelper.normalize_email(email)

        with self._resolving("update_customer_session") as (resolution, uow):
            session = self.repo.update_session(
                uow,
                internal_session_id,
                SessionFields(email=email, braze_session=braze_session,
                              amplitude_session=amplitude_session, brand_id=brand_id)
            )
            if session is None:
                resolution.record("session_not_found", internal_session_id)
                return None

            customer = self.repo.customer_for_session(uow, internal_session_id)
            resolution.record("session_updated", internal_session_id, customer.email if customer else None)

        return to_plain(session)

    # Linking

    def link_on_login(
        self,
        provider: str,
        external_session_id: str,
        brand_id: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        customer_id: Optional[str] = None,
        internal_session_id: Optional[str] = None
    ) -> Optional[Dict]:
        """
        Link the visitor's session to a customer at login.

        Email upserts the customer. Phone or customerId alone only link to a
        customer that already exists; when none does the result is None and
        nothing is written.

        Raises:
            MissingLinkAttribute: none of email, phone, customerId supplied
        """
        email = IdentityHelper.normalize_email(email)
        phone = IdentityHelper.normalize_phone(phone)
        customer_id = customer_id or None
        if not (email or phone or customer_id):
            raise MissingLinkAttribute()
        provider = self._provider(provider)
        self._require(external_session_id, "externalSessionId")

        with self._resolving("link_on_login") as (resolution, uow):
            internal_id = internal_session_id or self._external_session_id(uow, provider, external_session_id, brand_id)

            if not email:
                existing = self.repo.find_customer(uow, customer_id=customer_id, phone=phone)
                if existing is None:
                    resolution.record("customer_not_found", internal_id)
                    logger.info("Login link for session %s found no customer by id/phone", internal_id)
                    return None
                email = existing.email

            self._guard_relink(uow, internal_id, email)
            customer = self.repo.upsert_customer(uow, email, CustomerFields(internal_session_id=internal_id, phone=phone))
            session = self.repo.upsert_session(
                uow, internal_id, SessionFields.for_provider(provider, external_session_id, brand_id, email)
            )
            self._link(uow, resolution, internal_id, customer)
            self.repo.set_latest_session(uow, customer, internal_id)

        return to_plain({'internalSessionId': internal_id, 'customer': customer, 'session': session})

    def link_external_session_to_customer(
        self,
        email: str,
        provider: str,
        external_session_id: str,
        brand_id: Optional[str] = None
    ) -> Dict:
        """First identification of a Braze/Amplitude session; LATEST_SESSION is left alone"""
        email = self._require_email(email)
        provider = self._provider(provider)
        self._require(external_session_id, "externalSessionId")

        with self._resolving("link_external_session") as (resolution, uow):
            internal_id = self._external_session_id(uow, provider, external_session_id, brand_id)
            self._guard_relink(uow, internal_id, email)
            customer = self.repo.upsert_customer(uow, email, CustomerFields())
            self.repo.upsert_session(
                uow, internal_id, SessionFields.for_provider(provider, external_session_id, brand_id, email)
            )
            self._link(uow, resolution, internal_id, customer)

        return to_plain(customer)

    def link_internal_session_to_customer(
        self,
        email: str,
        internal_session_id: str,
        brand_id: Optional[str] = None
    ) -> Dict:
        """Link the internal session after login and make it the latest one"""
        email = self._require_email(email)
        self._require(internal_session_id, "internalSessionId")

        with self._resolving("link_internal_session") as (resolution, uow):
            customer = self._link_internal(uow, resolution, email, internal_session_id, brand_id)

        return to_plain(customer)

    def stitch_internal_to_existing(
        self,
        email: str,
        internal_session_id: str,
        brand_id: Optional[str] = None
    ) -> Dict:
        """
        Link the internal session to the customer, repoint LATEST_SESSION and
        add LINKED_TO edges from it to every Braze/Amplitude session the
        customer already has. Afterwards the customer resolves from any of
        those session ids.
        """
        email = self._require_email(email)
        self._require(internal_session_id, "internalSessionId")

        with self._resolving("stitch_internal_to_existing") as (resolution, uow):
            customer = self._link_internal(uow, resolution, email, internal_session_id, brand_id)

            for sibling in self.repo.sessions_for_customer(uow, customer):
                if sibling.internal_session_id == internal_session_id or not sibling.is_external:
                    continue
                self.repo.link_sessions(uow, internal_session_id, sibling.internal_session_id)
                resolution.record(f"stitched:{sibling.internal_session_id}", internal_session_id, customer.email)

        return to_plain(customer)

    # Kept under the operation name used by existing callers
    link_internal_to_existing_sessions = stitch_internal_to_existing

    # Lookups (no mutation)

    def quick_identify(
        self,
        internal_session_id: Optional[str] = None,
        provider: Optional[str] = None,
        external_session_id: Optional[str] = None,
        brand_id: Optional[str] = None
    ) -> Optional[Dict]:
        """
        Resolve a session by internal id or by external session.

        Returns:
            None when the session has never been seen; otherwise
            {'status': anonymous|linked|stitched, 'session', 'customer', 'brand'}
            where customer is None for anonymous sessions.
        """
        if internal_session_id:
            return self.quick_identify_customer(internal_session_id)
        if provider and external_session_id:
            return self.quick_identify_external(provider, external_session_id, brand_id)
        raise ValidationError("Provide internalSessionId or provider and externalSessionId")

    def quick_identify_customer(self, internal_session_id: str) -> Optional[Dict]:
        self._require(internal_session_id, "internalSessionId")
        with self.repo.unit_of_work() as uow:
            session = self.repo.find_session(uow, internal_session_id)
            if session is None:
                return None
            return self._resolved_session(uow, session)

    # Same lookup, exposed under the legacy operation name
    get_customer_session = quick_identify_customer

    def quick_identify_external(
        self,
        provider: str,
        external_session_id: str,
        brand_id: Optional[str] = None
    ) -> Optional[Dict]:
        provider = self._provider(provider)
        self._require(external_session_id, "externalSessionId")
        with self.repo.unit_of_work() as uow:
            session = self._find_external_session(uow, provider, external_session_id, brand_id)
            if session is None:
                return None
            return self._resolved_session(uow, session)

    def get_customer_for_session(self, provider: str, external_session_id: str) -> Optional[Dict]:
        """Legacy lookup by provider session; same shape as quick_identify"""
        return self.quick_identify_external(provider, external_session_id)

    def find_customer_by_session(
        self,
        internal_session_id: Optional[str] = None,
        braze_session: Optional[str] = None,
        amplitude_session: Optional[str] = None,
        email: Optional[str] = None
    ) -> Optional[Dict]:
        """
        Priority lookup (internal id, Braze, Amplitude, email).

        Returns:
            {'session', 'customer', 'brand'}, or None when no session matches
            or the matched session has no customer.
        """
        keys = {
            LookupKey.INTERNAL_SESSION_ID: internal_session_id,
            LookupKey.BRAZE_SESSION: braze_session,
            LookupKey.AMPLITUDE_SESSION: amplitude_session,
            LookupKey.EMAIL: email,
        }
        if not any(keys.values()):
            raise ValidationError("At least one session identifier is required")

        with self.repo.unit_of_work() as uow:
            session = self.repo.find_by_any_key(uow, keys)
            if session is None:
                return None
            customer = self.repo.customer_for_session(uow, session.internal_session_id)
            if customer is None:
                return None
            brand = self.repo.brand_for_session(uow, session.internal_session_id)

        return to_plain({'session': session, 'customer': customer, 'brand': brand})

    def find_customer_by_any_session(
        self,
        provider: Optional[str] = None,
        external_session_id: Optional[str] = None,
        internal_session_id: Optional[str] = None
    ) -> Optional[Dict]:
        """Customer record only, from an internal id or a provider session"""
        key = PROVIDER_LOOKUP_KEY[self._provider(provider)] if provider else None
        external = external_session_id if key else None

        result = self.find_customer_by_session(
            internal_session_id=internal_session_id or (external if key == LookupKey.INTERNAL_SESSION_ID else None),
            braze_session=external if key == LookupKey.BRAZE_SESSION else None,
            amplitude_session=external if key == LookupKey.AMPLITUDE_SESSION else None,
        )
        return result['customer'] if result else None

    def find_customer_by_email(self, email: str) -> Optional[Dict]:
        """Customer with its latest session and that session's brand"""
        email = self._require_email(email)
        with self.repo.unit_of_work() as uow:
            customer = self.repo.find_customer(uow, email=email)
            if customer is None:
                return None
            session = self._latest_or_most_recent(uow, customer)
            brand = self.repo.brand_for_session(uow, session.internal_session_id) if session else None

        return to_plain({'session': session, 'customer': customer, 'brand': brand})

    def get_customer_with_sessions(self, email: str) -> Optional[Dict]:
        """Customer, all its sessions (most recent first) and the distinct brands they ran under"""
        email = self._require_email(email)
        with self.repo.unit_of_work() as uow:
            customer = self.repo.find_customer(uow, email=email)
            if customer is None:
                return None
            sessions = self.repo.sessions_for_customer(uow, customer)
            brands = self.repo.brands_for_sessions(uow, sessions)

        distinct_brands = {b.id: b for b in brands.values() if b}
        return to_plain({'customer': customer, 'sessions': sessions, 'brands': list(distinct_brands.values())})

    def get_customer_latest_session(self, email: str) -> Optional[Dict]:
        email = self._require_email(email)
        with self.repo.unit_of_work() as uow:
            customer = self.repo.find_customer(uow, email=email)
            if customer is None:
                return None
            return to_plain(self.repo.latest_session(uow, customer))

    def get_all_customers_with_sessions(self) -> List[Dict]:
        """Every customer with its sessions (admin/debugging)"""
        with self.repo.unit_of_work() as uow:
            return [
                to_plain({'customer': customer, 'sessions': self.repo.sessions_for_customer(uow, customer)})
                for customer in self.repo.all_customers(uow)
            ]

    # Internals

    @contextmanager
    def _resolving(self, operation: str):
        """Unit of work for a mutating operation; audit and cache upkeep on every exit"""
        resolution = Resolution(operation)
        try:
            with self.repo.unit_of_work() as uow:
                yield resolution, uow
        finally:
            self._finish(resolution)

    def _finish(self, resolution: Resolution) -> None:
        if self.profile_cache is not None:
            for email in resolution.touched_emails:
                try:
                    self.profile_cache.invalidate(email)
                except Exception as e:
                    logger.warning("Failed to invalidate loyalty profile cache for %s: %s", email, e)

        if self.audit_repo is not None and resolution.steps:
            try:
                self.audit_repo.log_resolution_steps(resolution.resolution_id, resolution.operation, resolution.steps)
            except Exception as e:
                logger.warning("Failed to store audit trail for %s: %s", resolution.resolution_id, e)

    def _link_internal(
        self,
        uow: GraphUnitOfWork,
        resolution: Resolution,
        email: str,
        internal_session_id: str,
        brand_id: Optional[str]
    ) -> Customer:
        self._guard_relink(uow, internal_session_id, email)
        customer = self.repo.upsert_customer(uow, email, CustomerFields(internal_session_id=internal_session_id))
        self.repo.upsert_session(uow, internal_session_id, SessionFields(email=email, brand_id=brand_id))
        self._link(uow, resolution, internal_session_id, customer)
        self.repo.set_latest_session(uow, customer, internal_session_id)
        return customer

    def _link(self, uow: GraphUnitOfWork, resolution: Resolution, internal_session_id: str, customer: Customer) -> LinkOutcome:
        previous = self.repo.customer_for_session(uow, internal_session_id)
        outcome = self.repo.link_session_to_customer(uow, internal_session_id, customer, self.relink_policy)
        resolution.record(f"link_{outcome.value}", internal_session_id, customer.email)
        if previous is not None and previous.id != customer.id:
            resolution.record(f"unlinked_from:{previous.id}", internal_session_id, previous.email)
        return outcome

    def _guard_relink(self, uow: GraphUnitOfWork, internal_session_id: str, email: str) -> None:
        """Under REJECT, refuse before anything is written"""
        if self.relink_policy != RelinkPolicy.REJECT:
            return
        current = self.repo.customer_for_session(uow, internal_session_id)
        if current is not None and current.email != email:
            raise RelinkConflict(internal_session_id, current.id, email)

    def _resolved_session(self, uow: GraphUnitOfWork, session: Session) -> Dict:
        customer = self.repo.customer_for_session(uow, session.internal_session_id)
        brand = self.repo.brand_for_session(uow, session.internal_session_id)
        if customer is None:
            state = SessionState.ANONYMOUS
        elif (self.repo.linked_sessions(uow, session.internal_session_id)
              or self.repo.sessions_linking_to(uow, session.internal_session_id)):
            state = SessionState.STITCHED
        else:
            state = SessionState.LINKED
        return to_plain({'status': state, 'session': session, 'customer': customer, 'brand': brand})

    def _latest_or_most_recent(self, uow: GraphUnitOfWork, customer: Customer) -> Optional[Session]:
        latest = self.repo.latest_session(uow, customer)
        if latest is not None:
            return latest
        sessions = self.repo.sessions_for_customer(uow, customer)
        return sessions[0] if sessions else None

    def _find_external_session(
        self,
        uow: GraphUnitOfWork,
        provider: Provider,
        external_session_id: str,
        brand_id: Optional[str]
    ) -> Optional[Session]:
        """Most recently seen session carrying the external id, within brand_id when given"""
        if provider == Provider.INTERNAL:
            return self.repo.find_session(uow, external_session_id)
        sessions = self.repo.find_sessions_by(uow, PROVIDER_LOOKUP_KEY[provider], external_session_id)
        if brand_id:
            sessions = [s for s in sessions if s.brand_id == brand_id]
        return sessions[0] if sessions else None

    def _external_session_id(
        self,
        uow: GraphUnitOfWork,
        provider: Provider,
        external_session_id: str,
        brand_id: Optional[str]
    ) -> str:
        """
        Session key for a link by provider session.
        Reuse the session identify already recorded for that external id
        (under whatever internalSessionId it was given); derive a key only
        when there is none.
        """
        existing = self._find_external_session(uow, provider, external_session_id, brand_id)
        if existing is not None:
            return existing.internal_session_id
        return self._derived_session_id(provider, external_session_id, brand_id)

    @staticmethod
    def _derived_session_id(provider: Provider, external_session_id: str, brand_id: Optional[str]) -> str:
        if provider == Provider.INTERNAL:
            return external_session_id
        return IdentityHelper.derive_internal_session_id(provider, external_session_id, brand_id)

    @staticmethod
    def _provider(provider) -> Provider:
        try:
            return Provider(provider)
        except ValueError:
            raise ValidationError(
                f"Unknown provider {provider!r}; expected one of: {', '.join(p.value for p in Provider)}"
            ) from None

    @staticmethod
    def _require(value: Optional[str], field: str) -> None:
        if not value:
            raise ValidationError(f"{field} is required")

    @staticmethod
    def _require_email(email: Optional[str]) -> str:
        normalized = IdentityHelper.normalize_email(email)
        if not normalized:
            raise MissingLinkAttribute("email is required")
        return normalized
