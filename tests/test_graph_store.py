"""Tests for the Neo4j graph store adapter (driver mocked)."""

from unittest.mock import MagicMock

import pytest
from neo4j.exceptions import ServiceUnavailable, SessionExpired

from brandgraph.core.errors import IntegrityViolation, StoreUnavailable
from brandgraph.repositories.graph_store import SCHEMA_STATEMENTS, Neo4jGraphStore, Neo4jUnitOfWork


def make_uow(records=None):
    session = MagicMock()
    session.run.return_value = records or []
    return Neo4jUnitOfWork(session), session


class TestNeo4jUnitOfWork:

    def test_merge_node_query(self):
        uow, session = make_uow([{"n": {"internalSessionId": "web-1"}}])

        node = uow.merge_node(
            "Session",
            {"internalSessionId": "web-1"},
            on_create={"id": "abc"},
            properties={"brandId": "brand-a"},
            monotonic={"lastSeenAt": "2026-01-01T00:00:00.000000Z"}
        )

        query, params = session.run.call_args.args
        assert node == {"internalSessionId": "web-1"}
        assert "MERGE (n:Session {internalSessionId: $k_internalSessionId})" in query
        assert "ON CREATE SET n += $on_create" in query
        assert "SET n += $properties" in query
        assert "n.lastSeenAt < $max_lastSeenAt" in query
        assert params == {
            "k_internalSessionId": "web-1",
            "on_create": {"id": "abc"},
            "properties": {"brandId": "brand-a"},
            "max_lastSeenAt": "2026-01-01T00:00:00.000000Z",
        }

    def test_merge_node_without_result(self):
        uow, _ = make_uow([])

        with pytest.raises(IntegrityViolation):
            uow.merge_node("Brand", {"id": "brand-a"})

    def test_match_node_missing(self):
        uow, session = make_uow([])

        assert uow.match_node("Session", {"internalSessionId": "web-1"}, properties={"email": "a@example.com"}) is None
        assert session.run.call_args.args[0].startswith("MATCH (n:Session")

    def test_find_nodes_without_match(self):
        uow, session = make_uow([{"n": {"id": "1"}}, {"n": {"id": "2"}}])

        assert uow.find_nodes("Customer") == [{"id": "1"}, {"id": "2"}]
        assert session.run.call_args.args == ("MATCH (n:Customer) RETURN n", {})

    def test_replace_edge_deletes_other_targets(self):
        uow, session = make_uow([{"linked": 1}])

        assert uow.replace_edge("Session", {"internalSessionId": "web-1"}, "BELONGS_TO", "Customer", {"email": "a@example.com"})

        query, params = session.run.call_args.args
        assert "OPTIONAL MATCH (a)-[old:BELONGS_TO]->(other) WHERE other <> b" in query
        assert "DELETE old" in query
        assert "MERGE (a)-[:BELONGS_TO]->(b)" in query
        assert params == {"a_internalSessionId": "web-1", "b_email": "a@example.com"}

    def test_delete_edge_query(self):
        uow, session = make_uow([{"deleted": 1}])

        assert uow.delete_edge("Customer", {"email": "a@example.com"}, "LATEST_SESSION", "Session", {"internalSessionId": "web-1"})

        query, params = session.run.call_args.args
        assert "MATCH (a)-[r:LATEST_SESSION]->(b)" in query
        assert "DELETE r" in query
        assert params == {"a_email": "a@example.com", "b_internalSessionId": "web-1"}

    def test_delete_edge_without_edge(self):
        uow, _ = make_uow([{"deleted": 0}])

        assert not uow.delete_edge("Customer", {"email": "a@example.com"}, "LATEST_SESSION", "Session", {"internalSessionId": "web-1"})

    def test_merge_edge_missing_endpoint(self):
        uow, _ = make_uow([{"linked": 0}])

        assert not uow.merge_edge("Session", {"internalSessionId": "a"}, "LINKED_TO", "Session", {"internalSessionId": "b"})

    def test_neighbors_direction(self):
        uow, session = make_uow([])

        uow.neighbors("Customer", {"email": "a@example.com"}, "BELONGS_TO", "Session", direction="in")

        assert "<-[:BELONGS_TO]-(n:Session)" in session.run.call_args.args[0]
        with pytest.raises(ValueError):
            uow.neighbors("Customer", {"email": "a@example.com"}, "BELONGS_TO", "Session", direction="both")

    def test_identifiers_are_validated(self):
        uow, session = make_uow([])

        with pytest.raises(ValueError):
            uow.find_nodes("Session) DETACH DELETE n //")
        with pytest.raises(ValueError):
            uow.find_nodes("Session", {"email} RETURN 1 //": "x"})
        session.run.assert_not_called()

    @pytest.mark.parametrize("error", [ServiceUnavailable("down"), SessionExpired("gone")])
    def test_driver_errors_become_store_unavailable(self, error):
        uow, session = make_uow()
        session.run.side_effect = error

        with pytest.raises(StoreUnavailable):
            uow.find_nodes("Brand")


class TestNeo4jGraphStore:

    @pytest.fixture
    def driver(self):
        driver = MagicMock()
        driver.session.return_value.run.return_value = []
        return driver

    def test_session_is_closed_on_error(self, driver):
        store = Neo4jGraphStore(database="identity", driver=driver)

        with pytest.raises(RuntimeError):
            with store.session():
                raise RuntimeError("boom")

        driver.session.assert_called_once_with(database="identity")
        driver.session.return_value.close.assert_called_once()

    def test_verify_connectivity(self, driver):
        driver.verify_connectivity.side_effect = ServiceUnavailable("down")
        store = Neo4jGraphStore(driver=driver)

        with pytest.raises(StoreUnavailable):
            store.verify_connectivity()

    def test_ensure_schema_runs_every_statement(self, driver):
        store = Neo4jGraphStore(driver=driver)

        store.ensure_schema()

        queries = [c.args[0] for c in driver.session.return_value.run.call_args_list]
        assert queries == SCHEMA_STATEMENTS

    def test_close(self, driver):
        Neo4jGraphStore(driver=driver).close()

        driver.close.assert_called_once()
