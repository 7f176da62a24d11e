"""
Graph Store Adapter - Neo4j access for the identity graph

Contract the identity core relies on:
- durable node/edge storage
- pattern-matching lookups by property
- atomic create-or-match (MERGE) per call
- a session-scoped unit of work, released on every exit path

Driver exceptions never leave this module: they become StoreUnavailable,
IntegrityViolation or StoreError.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from neo4j import GraphDatabase
from neo4j.exceptions import (
    AuthError,
    ConstraintError,
    DriverError,
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
)

from brandgraph.core.errors import IntegrityViolation, StoreError, StoreUnavailable

logger = logging.getLogger(__name__)

NodeRecord = Mapping[str, Any]

# Labels, relationship types and property names cannot be Cypher parameters
_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

SCHEMA_STATEMENTS = [
    "CREATE CONSTRAINT brand_id IF NOT EXISTS FOR (b:Brand) REQUIRE b.id IS UNIQUE",
    "CREATE CONSTRAINT session_internal_id IF NOT EXISTS FOR (s:Session) REQUIRE s.internalSessionId IS UNIQUE",
    "CREATE CONSTRAINT customer_email IF NOT EXISTS FOR (c:Customer) REQUIRE c.email IS UNIQUE",
    "CREATE INDEX session_braze IF NOT EXISTS FOR (s:Session) ON (s.brazeSession)",
    "CREATE INDEX session_amplitude IF NOT EXISTS FOR (s:Session) ON (s.amplitudeSession)",
    "CREATE INDEX session_email IF NOT EXISTS FOR (s:Session) ON (s.email)",
    "CREATE INDEX customer_id IF NOT EXISTS FOR (c:Customer) ON (c.id)",
    "CREATE INDEX customer_phone IF NOT EXISTS FOR (c:Customer) ON (c.phone)",
]


class GraphUnitOfWork(ABC):
    """One store session. Every method is a single atomic store call."""

    @abstractmethod
    def merge_node(
        self,
        label: str,
        key: Dict[str, Any],
        on_create: Optional[Dict[str, Any]] = None,
        properties: Optional[Dict[str, Any]] = None,
        monotonic: Optional[Dict[str, Any]] = None
    ) -> NodeRecord:
        """
        Match the node by key or create it.
        on_create: set only when the node is created
        properties: set every time
        monotonic: set only if greater than the stored value (or unset)
        """

    @abstractmethod
    def match_node(
        self,
        label: str,
        key: Dict[str, Any],
        properties: Optional[Dict[str, Any]] = None,
        monotonic: Optional[Dict[str, Any]] = None
    ) -> Optional[NodeRecord]:
        """Like merge_node but never creates; None when no node matches"""

    @abstractmethod
    def find_nodes(self, label: str, match: Optional[Dict[str, Any]] = None) -> List[NodeRecord]:
        """All nodes of label whose properties equal match"""

    @abstractmethod
    def merge_edge(
        self,
        src_label: str,
        src_key: Dict[str, Any],
        rel_type: str,
        dst_label: str,
        dst_key: Dict[str, Any]
    ) -> bool:
        """Create the edge if absent. False when either endpoint is missing."""

    @abstractmethod
    def replace_edge(
        self,
        src_label: str,
        src_key: Dict[str, Any],
        rel_type: str,
        dst_label: str,
        dst_key: Dict[str, Any]
    ) -> bool:
        """Make dst the only rel_type target of src. False when either endpoint is missing."""

    @abstractmethod
    def delete_edge(
        self,
        src_label: str,
        src_key: Dict[str, Any],
        rel_type: str,
        dst_label: str,
        dst_key: Dict[str, Any]
    ) -> bool:
        """Remove the src-[rel_type]->dst edge. False when there was none."""

    @abstractmethod
    def neighbors(
        self,
        label: str,
        key: Dict[str, Any],
        rel_type: str,
        target_label: str,
        direction: str = "out"
    ) -> List[NodeRecord]:
        """Nodes reachable over one rel_type edge ('out' or 'in')"""


class GraphStore(ABC):
    """Opens units of work against the backing store"""

    @abstractmethod
    def session(self) -> Iterator[GraphUnitOfWork]:
        """Context manager yielding a unit of work; always released"""

    @abstractmethod
    def verify_connectivity(self) -> None:
        """Raise StoreUnavailable when the store cannot be reached"""

    def ensure_schema(self) -> None:
        """Create uniqueness constraints and lookup indexes"""

    def close(self) -> None:
        """Release driver resources"""


@contextmanager
def translate_driver_errors(operation: str):
    """Re-raise neo4j driver errors as store errors"""
    try:
        yield
    except (ServiceUnavailable, SessionExpired, AuthError) as e:
        raise StoreUnavailable(f"{operation}: graph store unreachable: {e}") from e
    except ConstraintError as e:
        raise IntegrityViolation(f"{operation}: uniqueness constraint violated: {e}") from e
    except (Neo4jError, DriverError) as e:
        raise StoreError(f"{operation}: {e}") from e


def _ident(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid graph identifier: {name!r}")
    return name


def _map_pattern(values: Dict[str, Any], prefix: str) -> Tuple[str, Dict[str, Any]]:
    """Inline property map, e.g. {id: $k_id}, plus its parameters"""
    parts = []
    params = {}
    for prop, value in values.items():
        param = f"{prefix}_{_ident(prop)}"
        parts.append(f"{prop}: ${param}")
        params[param] = value
    return "{" + ", ".join(parts) + "}", params


def _monotonic_sets(var: str, monotonic: Dict[str, Any]) -> Tuple[List[str], Dict[str, Any]]:
    clauses = []
    params = {}
    for prop, value in monotonic.items():
        param = f"max_{_ident(prop)}"
        clauses.append(
            f"SET {var}.{prop} = CASE WHEN {var}.{prop} IS NULL OR {var}.{prop} < ${param} "
            f"THEN ${param} ELSE {var}.{prop} END"
        )
        params[param] = value
    return clauses, params


class Neo4jUnitOfWork(GraphUnitOfWork):
    """Unit of work over one neo4j driver session (auto-commit statements)"""

    def __init__(self, session):
        self._session = session

    def _run(self, operation: str, query: str, params: Dict[str, Any]) -> List:
        with translate_driver_errors(operation):
            result = self._session.run(query, params)
            return list(result)

    def merge_node(self, label, key, on_create=None, properties=None, monotonic=None):
        key_map, params = _map_pattern(key, "k")
        lines = [f"MERGE (n:{_ident(label)} {key_map})"]
        if on_create:
            lines.append("ON CREATE SET n += $on_create")
            params['on_create'] = on_create
        if properties:
            lines.append("SET n += $properties")
            params['properties'] = properties
        clauses, max_params = _monotonic_sets("n", monotonic or {})
        lines.extend(clauses)
        params.update(max_params)
        lines.append("RETURN n")

        records = self._run(f"merge {label}", "\n".join(lines), params)
        if len(records) != 1:
            raise IntegrityViolation(f"merge {label} {key} returned {len(records)} nodes")
        return records[0]['n']

    def match_node(self, label, key, properties=None, monotonic=None):
        key_map, params = _map_pattern(key, "k")
        lines = [f"MATCH (n:{_ident(label)} {key_map})"]
        if properties:
            lines.append("SET n += $properties")
            params['properties'] = properties
        clauses, max_params = _monotonic_sets("n", monotonic or {})
        lines.extend(clauses)
        params.update(max_params)
        lines.append("RETURN n")

        records = self._run(f"match {label}", "\n".join(lines), params)
        if len(records) > 1:
            raise IntegrityViolation(f"match {label} {key} returned {len(records)} nodes")
        return records[0]['n'] if records else None

    def find_nodes(self, label, match=None):
        if match:
            pattern, params = _map_pattern(match, "m")
            query = f"MATCH (n:{_ident(label)} {pattern}) RETURN n"
        else:
            query, params = f"MATCH (n:{_ident(label)}) RETURN n", {}
        return [record['n'] for record in self._run(f"find {label}", query, params)]

    def _edge_endpoints(self, src_label, src_key, dst_label, dst_key):
        src_map, params = _map_pattern(src_key, "a")
        dst_map, dst_params = _map_pattern(dst_key, "b")
        params.update(dst_params)
        match = f"MATCH (a:{_ident(src_label)} {src_map})\nMATCH (b:{_ident(dst_label)} {dst_map})"
        return match, params

    def merge_edge(self, src_label, src_key, rel_type, dst_label, dst_key):
        match, params = self._edge_endpoints(src_label, src_key, dst_label, dst_key)
        query = f"{match}\nMERGE (a)-[:{_ident(rel_type)}]->(b)\nRETURN count(*) AS linked"
        records = self._run(f"merge {rel_type}", query, params)
        return bool(records and records[0]['linked'])

    def replace_edge(self, src_label, src_key, rel_type, dst_label, dst_key):
        match, params = self._edge_endpoints(src_label, src_key, dst_label, dst_key)
        rel = _ident(rel_type)
        query = (
            f"{match}\n"
            f"OPTIONAL MATCH (a)-[old:{rel}]->(other) WHERE other <> b\n"
            f"DELETE old\n"
            f"WITH DISTINCT a, b\n"
            f"MERGE (a)-[:{rel}]->(b)\n"
            f"RETURN count(*) AS linked"
        )
        records = self._run(f"replace {rel_type}", query, params)
        return bool(records and records[0]['linked'])

    def delete_edge(self, src_label, src_key, rel_type, dst_label, dst_key):
        match, params = self._edge_endpoints(src_label, src_key, dst_label, dst_key)
        query = f"{match}\nMATCH (a)-[r:{_ident(rel_type)}]->(b)\nDELETE r\nRETURN count(r) AS deleted"
        records = self._run(f"delete {rel_type}", query, params)
        return bool(records and records[0]['deleted'])

    def neighbors(self, label, key, rel_type, target_label, direction="out"):
        key_map, params = _map_pattern(key, "k")
        rel = _ident(rel_type)
        if direction == "out":
            edge = f"-[:{rel}]->"
        elif direction == "in":
            edge = f"<-[:{rel}]-"
        else:
            raise ValueError(f"direction must be 'out' or 'in', got {direction!r}")
        query = f"MATCH (a:{_ident(label)} {key_map}){edge}(n:{_ident(target_label)})\nRETURN DISTINCT n"
        return [record['n'] for record in self._run(f"neighbors {rel_type}", query, params)]


class Neo4jGraphStore(GraphStore):
    """
    Identity graph in Neo4j.
    The driver is shared (thread-safe); each unit of work gets its own session.
    """

    def __init__(
        self,
        uri: str = None,
        user: str = None,
        password: str = None,
        database: str = None,
        driver=None
    ):
        self.database = database or os.getenv('NEO4J_DATABASE', 'neo4j')
        self._driver = driver or GraphDatabase.driver(
            uri or os.getenv('NEO4J_URI', 'bolt://localhost:7687'),
            auth=(
                user or os.getenv('NEO4J_USER', 'neo4j'),
                password or os.getenv('NEO4J_PASSWORD', 'brandgraph_dev')
            )
        )

    @contextmanager
    def session(self):
        with translate_driver_errors("open session"):
            driver_session = self._driver.session(database=self.database)
        try:
            yield Neo4jUnitOfWork(driver_session)
        finally:
            driver_session.close()

    def verify_connectivity(self) -> None:
        with translate_driver_errors("verify connectivity"):
            self._driver.verify_connectivity()

    def ensure_schema(self) -> None:
        with self.session() as uow:
            for statement in SCHEMA_STATEMENTS:
                uow._run("ensure schema", statement, {})
        logger.info("Graph schema ensured (%d statements)", len(SCHEMA_STATEMENTS))

    def close(self) -> None:
        self._driver.close()
        logger.info("Neo4j driver closed")
