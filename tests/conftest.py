"""Shared test fixtures: in-memory identity graph, ticking clock, wired services."""

import itertools
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple
from unittest.mock import MagicMock

import pytest

from brandgraph.core.errors import IntegrityViolation, StoreUnavailable
from brandgraph.core.identity_model import IdentityHelper, RelinkPolicy
from brandgraph.repositories.audit_repository import ResolutionAuditRepository
from brandgraph.repositories.graph_store import GraphStore, GraphUnitOfWork
from brandgraph.repositories.identity_repository import IdentityRepository
from brandgraph.repositories.profile_cache_repository import ProfileCacheRepository
from brandgraph.services.identity_service import IdentityResolver
from brandgraph.services.loyalty_service import LoyaltyService

# =============================================================================
# In-memory graph store
# =============================================================================


class InMemoryUnitOfWork(GraphUnitOfWork):
    """Implements the unit-of-work contract over InMemoryGraphStore's dicts"""

    def __init__(self, store: 'InMemoryGraphStore'):
        self.store = store

    def merge_node(self, label, key, on_create=None, properties=None, monotonic=None):
        with self.store.lock:
            uids = self.store.match(label, key)
            if len(uids) > 1:
                raise IntegrityViolation(f"merge {label} {key} matched {len(uids)} nodes")
            if uids:
                node = self.store.nodes[uids[0]][1]
            else:
                node = dict(key)
                node.update(on_create or {})
                self.store.add_node(label, node)
            self._apply(node, properties, monotonic)
            return dict(node)

    def match_node(self, label, key, properties=None, monotonic=None):
        with self.store.lock:
            uids = self.store.match(label, key)
            if not uids:
                return None
            node = self.store.nodes[uids[0]][1]
            self._apply(node, properties, monotonic)
            return dict(node)

    def find_nodes(self, label, match=None):
        with self.store.lock:
            return [dict(self.store.nodes[uid][1]) for uid in self.store.match(label, match or {})]

    def merge_edge(self, src_label, src_key, rel_type, dst_label, dst_key):
        with self.store.lock:
            sources = self.store.match(src_label, src_key)
            targets = self.store.match(dst_label, dst_key)
            if not (sources and targets):
                return False
            for a in sources:
                for b in targets:
                    if (a, rel_type, b) not in self.store.edges:
                        self.store.edges.add((a, rel_type, b))
                        self.store.writes += 1
            return True

    def replace_edge(self, src_label, src_key, rel_type, dst_label, dst_key):
        with self.store.lock:
            sources = self.store.match(src_label, src_key)
            targets = self.store.match(dst_label, dst_key)
            if not (sources and targets):
                return False
            for a in sources:
                stale = {e for e in self.store.edges if e[0] == a and e[1] == rel_type and e[2] not in targets}
                self.store.edges -= stale
                self.store.writes += len(stale)
            return self.merge_edge(src_label, src_key, rel_type, dst_label, dst_key)

    def delete_edge(self, src_label, src_key, rel_type, dst_label, dst_key):
        with self.store.lock:
            sources = set(self.store.match(src_label, src_key))
            targets = set(self.store.match(dst_label, dst_key))
            doomed = {e for e in self.store.edges if e[0] in sources and e[1] == rel_type and e[2] in targets}
            self.store.edges -= doomed
            self.store.writes += len(doomed)
            return bool(doomed)

    def neighbors(self, label, key, rel_type, target_label, direction="out"):
        if direction not in ("out", "in"):
            raise ValueError(direction)
        with self.store.lock:
            sources = set(self.store.match(label, key))
            found = []
            for a, rel, b in sorted(self.store.edges):
                if rel != rel_type:
                    continue
                src, dst = (a, b) if direction == "out" else (b, a)
                if src in sources and self.store.nodes[dst][0] == target_label and dst not in found:
                    found.append(dst)
            return [dict(self.store.nodes[uid][1]) for uid in found]

    def _apply(self, node: Dict[str, Any], properties, monotonic) -> None:
        node.update(properties or {})
        for prop, value in (monotonic or {}).items():
            if node.get(prop) is None or node[prop] < value:
                node[prop] = value
        self.store.writes += 1


class InMemoryGraphStore(GraphStore):
    """Graph store held in dicts; tracks open sessions and write count"""

    def __init__(self):
        self.lock = threading.RLock()
        self.nodes: Dict[int, Tuple[str, Dict[str, Any]]] = {}
        self.edges: Set[Tuple[int, str, int]] = set()
        self._uids = itertools.count(1)
        self.available = True
        self.open_sessions = 0
        self.sessions_opened = 0
        self.writes = 0
        self.closed = False

    def add_node(self, label: str, properties: Dict[str, Any]) -> int:
        uid = next(self._uids)
        self.nodes[uid] = (label, properties)
        self.writes += 1
        return uid

    def match(self, label: str, properties: Dict[str, Any]) -> List[int]:
        return [
            uid for uid, (node_label, node) in self.nodes.items()
            if node_label == label and all(node.get(k) == v for k, v in properties.items())
        ]

    def count(self, label: str) -> int:
        return len(self.match(label, {}))

    def edges_of(self, rel_type: str) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
        return [(self.nodes[a][1], self.nodes[b][1]) for a, rel, b in sorted(self.edges) if rel == rel_type]

    @contextmanager
    def session(self):
        if not self.available:
            raise StoreUnavailable("in-memory store is down")
        self.open_sessions += 1
        self.sessions_opened += 1
        try:
            yield InMemoryUnitOfWork(self)
        finally:
            self.open_sessions -= 1

    def verify_connectivity(self) -> None:
        if not self.available:
            raise StoreUnavailable("in-memory store is down")

    def close(self) -> None:
        self.closed = True


# =============================================================================
# Clock
# =============================================================================


@pytest.fixture(autouse=True)
def ticking_clock(monkeypatch):
    """utc_now_iso advances one second per call, so recency order is deterministic"""
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    ticks = itertools.count()

    def now_iso() -> str:
        return (start + timedelta(seconds=next(ticks))).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    monkeypatch.setattr(IdentityHelper, "utc_now_iso", staticmethod(now_iso))
    return now_iso


# =============================================================================
# Stores and services
# =============================================================================


@pytest.fixture
def graph_store() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def identity_repo(graph_store) -> IdentityRepository:
    return IdentityRepository(graph_store)


@pytest.fixture
def audit_repo() -> MagicMock:
    return MagicMock(spec=ResolutionAuditRepository)


@pytest.fixture
def profile_cache() -> MagicMock:
    cache = MagicMock(spec=ProfileCacheRepository)
    cache.get_profile.return_value = None
    return cache


@pytest.fixture
def resolver(identity_repo, audit_repo, profile_cache) -> IdentityResolver:
    return IdentityResolver(identity_repo, RelinkPolicy.REPOINT, audit_repo, profile_cache)


@pytest.fixture
def rejecting_resolver(identity_repo) -> IdentityResolver:
    return IdentityResolver(identity_repo, RelinkPolicy.REJECT)


@pytest.fixture
def loyalty_service(identity_repo) -> LoyaltyService:
    return LoyaltyService(identity_repo)


@pytest.fixture
def brands(resolver) -> List[Dict]:
    """Brands A and B"""
    return [
        resolver.upsert_brand("brand-a", "Brand A", "brand-a"),
        resolver.upsert_brand("brand-b", "Brand B", "brand-b"),
    ]


@pytest.fixture
def session_node(graph_store):
    """Stored properties of a Session, looked up by internalSessionId"""
    def lookup(internal_session_id: str) -> Optional[Dict[str, Any]]:
        uids = graph_store.match("Session", {"internalSessionId": internal_session_id})
        return graph_store.nodes[uids[0]][1] if uids else None
    return lookup
