"""
Identity Repository - typed access to the identity graph

Resolution Rules
- Merges are idempotent (MERGE by the entity's single canonical key)
- No destructive overwrites: optional fields are set only when supplied
- lastSeenAt never moves backwards
- BELONGS_TO / LATEST_SESSION / FOR_BRAND have at most one target
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from brandgraph.core.errors import (
    IntegrityViolation,
    RelinkConflict,
    RepositoryError,
    StoreError,
)
from brandgraph.core.identity_model import (
    LOOKUP_PRIORITY,
    Brand,
    Customer,
    CustomerFields,
    IdentityHelper,
    LinkOutcome,
    LookupKey,
    RelinkPolicy,
    Session,
    SessionFields,
    latest_first,
)
from brandgraph.repositories.graph_store import GraphStore, GraphUnitOfWork

logger = logging.getLogger(__name__)

BRAND = "Brand"
CUSTOMER = "Customer"
SESSION = "Session"

BELONGS_TO = "BELONGS_TO"
FOR_BRAND = "FOR_BRAND"
LATEST_SESSION = "LATEST_SESSION"
LINKED_TO = "LINKED_TO"


def _session_key(internal_session_id: str) -> Dict[str, str]:
    return {'internalSessionId': internal_session_id}


def _customer_key(customer: Customer) -> Dict[str, str]:
    return {'email': customer.email}


def _single(records: List, what: str):
    if len(records) > 1:
        raise IntegrityViolation(f"{what} matched {len(records)} nodes")
    return records[0] if records else None


class IdentityRepository:
    """
    Brand, Customer and Session upserts and lookups over a GraphStore.

    Canonical keys:
    - Brand: id
    - Session: internalSessionId
    - Customer: email (normalized)

    Every method takes the unit of work opened by unit_of_work(), so one
    public operation uses exactly one store session.
    """

    def __init__(self, store: GraphStore):
        self.store = store

    @contextmanager
    def unit_of_work(self) -> Iterator[GraphUnitOfWork]:
        """One store session; store errors surface as RepositoryError"""
        try:
            with self.store.session() as uow:
                yield uow
        except StoreError as e:
            logger.error("Graph store operation failed: %s", e)
            raise RepositoryError("Database operation failed", cause=e) from e

    # Brands

    def upsert_brand(self, uow: GraphUnitOfWork, brand_id: str, name: str, slug: str) -> Brand:
        node = uow.merge_node(BRAND, {'id': brand_id}, properties={'name': name, 'slug': slug})
        return Brand.from_record(node)

    def find_brand(self, uow: GraphUnitOfWork, brand_id: str) -> Optional[Brand]:
        node = _single(uow.find_nodes(BRAND, {'id': brand_id}), f"Brand {brand_id}")
        return Brand.from_record(node) if node else None

    # Sessions

    def upsert_session(self, uow: GraphUnitOfWork, internal_session_id: str, fields: SessionFields) -> Session:
        """Find by internalSessionId or create; refresh lastSeenAt; set supplied fields"""
        now = IdentityHelper.utc_now_iso()
        node = uow.merge_node(
            SESSION,
            _session_key(internal_session_id),
            on_create={'id': IdentityHelper.generate_id(), 'createdAt': now},
            properties=fields.to_properties(),
            monotonic={'lastSeenAt': now}
        )
        if fields.brand_id:
            self._point_session_to_brand(uow, internal_session_id, fields.brand_id)
        return Session.from_record(node)

    def update_session(self, uow: GraphUnitOfWork, internal_session_id: str, fields: SessionFields) -> Optional[Session]:
        """Same as upsert_session for an existing session; never creates"""
        node = uow.match_node(
            SESSION,
            _session_key(internal_session_id),
            properties=fields.to_properties(),
            monotonic={'lastSeenAt': IdentityHelper.utc_now_iso()}
        )
        if node is None:
            return None
        if fields.brand_id:
            self._point_session_to_brand(uow, internal_session_id, fields.brand_id)
        return Session.from_record(node)

    def _point_session_to_brand(self, uow: GraphUnitOfWork, internal_session_id: str, brand_id: str) -> None:
        linked = uow.replace_edge(SESSION, _session_key(internal_session_id), FOR_BRAND, BRAND, {'id': brand_id})
        if not linked:
            logger.debug("Brand %s not found; session %s keeps its FOR_BRAND edge", brand_id, internal_session_id)

    def find_session(self, uow: GraphUnitOfWork, internal_session_id: str) -> Optional[Session]:
        node = _single(uow.find_nodes(SESSION, _session_key(internal_session_id)), f"Session {internal_session_id}")
        return Session.from_record(node) if node else None

    def find_sessions_by(self, uow: GraphUnitOfWork, key: LookupKey, value: str) -> List[Session]:
        """Sessions carrying value under key, most recently seen first"""
        return latest_first([Session.from_record(n) for n in uow.find_nodes(SESSION, {key.value: value})])

    def find_by_any_key(self, uow: GraphUnitOfWork, keys: Dict[LookupKey, Optional[str]]) -> Optional[Session]:
        """
        Priority lookup: internalSessionId, brazeSession, amplitudeSession, email.
        The first key with any matching session decides; lower-priority keys
        are not consulted even if they would match a different session.
        For email, sessions linked to a customer win over anonymous ones.
        """
        for key in LOOKUP_PRIORITY:
            value = keys.get(key)
            if key == LookupKey.EMAIL:
                value = IdentityHelper.normalize_email(value)
            if not value:
                continue

            sessions = self.find_sessions_by(uow, key, value)
            if key == LookupKey.EMAIL:
                # identified sessions outrank anonymous ones carrying the same email
                owned = [s for s in sessions if self.customer_for_session(uow, s.internal_session_id)]
                sessions = owned or sessions
            if sessions:
                logger.debug("Session lookup matched on %s (%d candidates)", key.value, len(sessions))
                return sessions[0]
        return None

    # Customers

    def upsert_customer(self, uow: GraphUnitOfWork, email: str, fields: CustomerFields) -> Customer:
        """Find by normalized email or create; set supplied fields"""
        node = uow.merge_node(
            CUSTOMER,
            {'email': email},
            on_create={'id': IdentityHelper.generate_id(), 'createdAt': IdentityHelper.utc_now_iso()},
            properties=fields.to_properties()
        )
        return Customer.from_record(node)

    def find_customer(
        self,
        uow: GraphUnitOfWork,
        email: Optional[str] = None,
        customer_id: Optional[str] = None,
        phone: Optional[str] = None
    ) -> Optional[Customer]:
        """Lookup by email, then customer id, then phone"""
        if email:
            node = _single(uow.find_nodes(CUSTOMER, {'email': email}), f"Customer {email}")
            if node:
                return Customer.from_record(node)
        if customer_id:
            node = _single(uow.find_nodes(CUSTOMER, {'id': customer_id}), f"Customer id {customer_id}")
            if node:
                return Customer.from_record(node)
        if phone:
            customers = sorted(
                (Customer.from_record(n) for n in uow.find_nodes(CUSTOMER, {'phone': phone})),
                key=lambda c: c.created_at or ''
            )
            if len(customers) > 1:
                logger.warning("Phone %s shared by %d customers; using the oldest", phone, len(customers))
            if customers:
                return customers[0]
        return None

    def all_customers(self, uow: GraphUnitOfWork) -> List[Customer]:
        return sorted(
            (Customer.from_record(n) for n in uow.find_nodes(CUSTOMER)),
            key=lambda c: c.created_at or ''
        )

    # Edges

    def link_session_to_customer(
        self,
        uow: GraphUnitOfWork,
        internal_session_id: str,
        customer: Customer,
        policy: RelinkPolicy = RelinkPolicy.REPOINT
    ) -> LinkOutcome:
        """
        Establish BELONGS_TO (idempotent).
        Already linked to this customer: no-op.
        Linked to another customer: REPOINT replaces the edge, REJECT raises.
        """
        current = self.customer_for_session(uow, internal_session_id)
        if current is not None and current.id == customer.id:
            return LinkOutcome.UNCHANGED

        if current is not None and policy == RelinkPolicy.REJECT:
            raise RelinkConflict(internal_session_id, current.id, customer.id)

        linked = uow.replace_edge(SESSION, _session_key(internal_session_id), BELONGS_TO, CUSTOMER, _customer_key(customer))
        if not linked:
            raise IntegrityViolation(f"Cannot link session {internal_session_id}: session or customer missing")

        if current is not None:
            logger.warning(
                "Session %s relinked from customer %s to customer %s",
                internal_session_id, current.id, customer.id
            )
            self._release_latest_session(uow, current, internal_session_id)
            return LinkOutcome.RELINKED

        logger.info("Session %s linked to customer %s", internal_session_id, customer.id)
        return LinkOutcome.CREATED

    def _release_latest_session(self, uow: GraphUnitOfWork, customer: Customer, internal_session_id: str) -> None:
        """Drop a LATEST_SESSION edge into a session the customer no longer owns"""
        latest = self.latest_session(uow, customer)
        if latest is None or latest.internal_session_id != internal_session_id:
            return
        uow.delete_edge(CUSTOMER, _customer_key(customer), LATEST_SESSION, SESSION, _session_key(internal_session_id))
        remaining = self.sessions_for_customer(uow, customer)
        if remaining:
            self.set_latest_session(uow, customer, remaining[0].internal_session_id)
        logger.info("Customer %s latest session moved off relinked session %s", customer.id, internal_session_id)

    def set_latest_session(self, uow: GraphUnitOfWork, customer: Customer, internal_session_id: str) -> None:
        """Repoint LATEST_SESSION; a customer has at most one"""
        uow.replace_edge(CUSTOMER, _customer_key(customer), LATEST_SESSION, SESSION, _session_key(internal_session_id))

    def link_sessions(self, uow: GraphUnitOfWork, from_session_id: str, to_session_id: str) -> bool:
        """Merge (from)-[:LINKED_TO]->(to)"""
        return uow.merge_edge(SESSION, _session_key(from_session_id), LINKED_TO, SESSION, _session_key(to_session_id))

    # Neighbourhood reads

    def customer_for_session(self, uow: GraphUnitOfWork, internal_session_id: str) -> Optional[Customer]:
        nodes = uow.neighbors(SESSION, _session_key(internal_session_id), BELONGS_TO, CUSTOMER)
        node = _single(nodes, f"BELONGS_TO of session {internal_session_id}")
        return Customer.from_record(node) if node else None

    def brand_for_session(self, uow: GraphUnitOfWork, internal_session_id: str) -> Optional[Brand]:
        nodes = uow.neighbors(SESSION, _session_key(internal_session_id), FOR_BRAND, BRAND)
        node = _single(nodes, f"FOR_BRAND of session {internal_session_id}")
        return Brand.from_record(node) if node else None

    def sessions_for_customer(self, uow: GraphUnitOfWork, customer: Customer) -> List[Session]:
        nodes = uow.neighbors(CUSTOMER, _customer_key(customer), BELONGS_TO, SESSION, direction="in")
        return latest_first([Session.from_record(n) for n in nodes])

    def brands_for_sessions(self, uow: GraphUnitOfWork, sessions: List[Session]) -> Dict[str, Optional[Brand]]:
        """internalSessionId -> Brand (None when the session has no FOR_BRAND edge)"""
        return {s.internal_session_id: self.brand_for_session(uow, s.internal_session_id) for s in sessions}

    def latest_session(self, uow: GraphUnitOfWork, customer: Customer) -> Optional[Session]:
        nodes = uow.neighbors(CUSTOMER, _customer_key(customer), LATEST_SESSION, SESSION)
        node = _single(nodes, f"LATEST_SESSION of customer {customer.id}")
        return Session.from_record(node) if node else None

    def linked_sessions(self, uow: GraphUnitOfWork, internal_session_id: str) -> List[Session]:
        nodes = uow.neighbors(SESSION, _session_key(internal_session_id), LINKED_TO, SESSION)
        return latest_first([Session.from_record(n) for n in nodes])

    def sessions_linking_to(self, uow: GraphUnitOfWork, internal_session_id: str) -> List[Session]:
        """Internal sessions stitched onto this one"""
        nodes = uow.neighbors(SESSION, _session_key(internal_session_id), LINKED_TO, SESSION, direction="in")
        return latest_first([Session.from_record(n) for n in nodes])
