"""Tests for loyalty metrics and the loyalty service."""

from unittest.mock import MagicMock

import pytest

from brandgraph.core.errors import ValidationError
from brandgraph.core.identity_model import Brand, LoyaltyFilters, Session
from brandgraph.repositories.profile_cache_repository import ProfileCacheRepository
from brandgraph.services.loyalty_service import LoyaltyService, compute_loyalty_metrics


class TestComputeLoyaltyMetrics:

    def test_no_sessions(self):
        metrics = compute_loyalty_metrics([], {})

        assert metrics.to_dict() == {
            "totalSessions": 0,
            "totalBrands": 0,
            "crossBrandActivity": False,
            "lastActivity": None,
            "lastBrand": None,
        }

    def test_sessions_across_brands(self):
        brand_a = Brand("brand-a", "Brand A", "brand-a")
        brand_b = Brand("brand-b", "Brand B", "brand-b")
        sessions = [
            Session("1", "web-1", last_seen_at="2026-01-01T00:00:01.000000Z"),
            Session("2", "web-2", last_seen_at="2026-01-01T00:00:03.000000Z"),
            Session("3", "web-3", last_seen_at="2026-01-01T00:00:02.000000Z"),
            Session("4", "web-4", last_seen_at="2026-01-01T00:00:00.000000Z"),
        ]
        brands = {"web-1": brand_a, "web-2": brand_b, "web-3": brand_a, "web-4": None}

        metrics = compute_loyalty_metrics(sessions, brands)

        assert metrics.total_sessions == 4
        assert metrics.total_brands == 2
        assert metrics.cross_brand_activity is True
        assert metrics.last_activity == "2026-01-01T00:00:03.000000Z"
        assert metrics.last_brand is brand_b

    def test_single_brand_is_not_cross_brand(self):
        brand = Brand("brand-a")
        sessions = [Session("1", "web-1"), Session("2", "web-2")]

        metrics = compute_loyalty_metrics(sessions, {"web-1": brand, "web-2": brand})

        assert metrics.total_brands == 1
        assert metrics.cross_brand_activity is False


class TestLoyaltyProfile:

    def test_profile_by_email(self, resolver, loyalty_service, brands):
        resolver.link_internal_session_to_customer("user@example.com", "web-1", "brand-a")
        resolver.link_external_session_to_customer("user@example.com", "braze", "b-1", "brand-b")

        profile = loyalty_service.get_customer_loyalty_profile(email="User@Example.com")

        assert profile["customer"]["email"] == "user@example.com"
        assert len(profile["sessions"]) == 2
        assert sorted(b["id"] for b in profile["brands"]) == ["brand-a", "brand-b"]
        assert profile["loyaltyMetrics"]["totalSessions"] == 2
        assert profile["loyaltyMetrics"]["totalBrands"] == 2
        assert profile["loyaltyMetrics"]["crossBrandActivity"] is True
        assert profile["loyaltyMetrics"]["lastBrand"]["id"] == "brand-b"

    def test_session_without_brand(self, resolver, loyalty_service):
        resolver.link_internal_session_to_customer("user@example.com", "web-1")

        profile = loyalty_service.get_customer_loyalty_profile(email="user@example.com")

        assert profile["loyaltyMetrics"]["totalSessions"] == 1
        assert profile["loyaltyMetrics"]["totalBrands"] == 0
        assert profile["brands"] == []

    def test_profile_by_session(self, resolver, loyalty_service):
        resolver.link_internal_session_to_customer("user@example.com", "web-1")

        profile = loyalty_service.get_customer_loyalty_profile(internal_session_id="web-1")

        assert profile["customer"]["email"] == "user@example.com"

    def test_unknown_customer(self, loyalty_service):
        assert loyalty_service.get_customer_loyalty_profile(email="nobody@example.com") is None
        assert loyalty_service.get_customer_loyalty_profile(internal_session_id="nope") is None

    def test_requires_a_key(self, loyalty_service):
        with pytest.raises(ValidationError):
            loyalty_service.get_customer_loyalty_profile()


class TestProfileCache:

    @pytest.fixture
    def cache(self):
        cache = MagicMock(spec=ProfileCacheRepository)
        cache.get_profile.return_value = None
        return cache

    def test_cache_hit_skips_graph(self, identity_repo, graph_store, cache):
        cache.get_profile.return_value = {"customer": {"email": "user@example.com"}}
        service = LoyaltyService(identity_repo, cache)

        profile = service.get_customer_loyalty_profile(email="user@example.com")

        assert profile == {"customer": {"email": "user@example.com"}}
        assert graph_store.sessions_opened == 0

    def test_cache_miss_stores_profile(self, resolver, identity_repo, cache):
        resolver.link_internal_session_to_customer("user@example.com", "web-1")
        service = LoyaltyService(identity_repo, cache)

        profile = service.get_customer_loyalty_profile(email="user@example.com")

        cache.store_profile.assert_called_once_with("user@example.com", profile)

    def test_cache_errors_degrade_to_graph(self, resolver, identity_repo, cache):
        resolver.link_internal_session_to_customer("user@example.com", "web-1")
        cache.get_profile.side_effect = Exception("redis down")
        cache.store_profile.side_effect = Exception("redis down")
        service = LoyaltyService(identity_repo, cache)

        profile = service.get_customer_loyalty_profile(email="user@example.com")

        assert profile["customer"]["email"] == "user@example.com"


class TestAllCustomersActivity:

    @pytest.fixture
    def activity(self, resolver, brands):
        resolver.link_internal_session_to_customer("single@example.com", "web-1", "brand-a")
        resolver.link_internal_session_to_customer("multi@example.com", "web-2", "brand-a")
        resolver.link_external_session_to_customer("multi@example.com", "braze", "b-1", "brand-b")
        resolver.link_external_session_to_customer("multi@example.com", "amplitude", "a-1", "brand-b")

    def test_most_active_first(self, loyalty_service, activity):
        result = loyalty_service.get_all_customers_activity()

        assert [r["customer"]["email"] for r in result] == ["multi@example.com", "single@example.com"]
        assert result[0]["loyaltyMetrics"]["totalSessions"] == 3

    @pytest.mark.parametrize("filters,expected", [
        (LoyaltyFilters(cross_brand_only=True), ["multi@example.com"]),
        (LoyaltyFilters(min_sessions=2), ["multi@example.com"]),
        (LoyaltyFilters(min_brands=3), []),
        (LoyaltyFilters(min_sessions=1), ["multi@example.com", "single@example.com"]),
    ])
    def test_filters(self, loyalty_service, activity, filters, expected):
        result = loyalty_service.get_all_customers_activity(filters)

        assert [r["customer"]["email"] for r in result] == expected
