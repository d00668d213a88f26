"""
Unit tests for the statement service.

Tests request validation order, error categories, memoization of whole
statements, scoped cache flushes and end-to-end views over a seeded database.
"""

import os
import sqlite3
import tempfile
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from auth_billing.config.loader import CacheConfig, DatabaseConfig, Settings
from auth_billing.core.cache import CacheStore
from auth_billing.core.errors import ErrorCategory, InvalidArgument, NotFound, UpstreamFailure
from auth_billing.core.memoizer import QueryMemoizer
from auth_billing.core.service import BillingConfig, StatementService, create_service
from auth_billing.demo.seed_demo_data import DEMO_ORGANIZATIONS, build_demo_events
from auth_billing.storage.db import get_connection
from auth_billing.storage.models import EventRecord, Organization
from auth_billing.storage.repository import EventRepository

DAY = datetime(2024, 3, 1)


@pytest.fixture
def seeded_service():
    with tempfile.TemporaryDirectory() as temp_dir:
        settings = Settings(database=DatabaseConfig(path=os.path.join(temp_dir, "test.db")))
        repository = EventRepository(settings.database.path)
        repository.initialize_schema()
        repository.insert_organizations(DEMO_ORGANIZATIONS + [Organization("empty", "No Traffic")])
        repository.insert_events(build_demo_events(DAY, days=3))
        yield create_service(settings)


def mock_service(settings=None):
    repository = MagicMock()
    repository.get_organization.return_value = Organization("org1", "Xingye")
    repository.fetch_events.return_value = []
    repository.fetch_events_in_range.return_value = []
    repository.count_events.return_value = 0
    return StatementService(repository, QueryMemoizer(CacheStore()), settings or Settings()), repository


class TestBillingStatement:
    """Test billing statements end to end."""

    def test_single_day_amounts(self, seeded_service):
        """Verify totals and amounts for one day of demo traffic."""
        statement = seeded_service.billing_statement(BillingConfig(
            org_id="org1",
            period_start="2024-03-01",
            period_end="2024-03-01",
            two_factor_price=140,
            three_factor_price=300,
        ))
        # valid two-factor: 40 + 2 + 1 ; valid three-factor: 20 + 1 + 1
        assert statement.two_factor_total == 51
        assert statement.two_factor_valid_total == 43
        assert statement.three_factor_total == 25
        assert statement.three_factor_valid_total == 22
        assert statement.two_factor_amount == Decimal("60.20")
        assert statement.three_factor_amount == Decimal("66.00")
        assert statement.total_amount == Decimal("126.20")
        assert statement.org_name == "Xingye"
        assert statement.period_end == datetime(2024, 3, 1, 23, 59, 59, 999999)

    def test_organization_without_events(self, seeded_service):
        """Verify an org with no traffic gets an all-zero statement."""
        statement = seeded_service.billing_statement(BillingConfig(
            org_id="empty", period_start="2024-03-01", period_end="2024-03-31",
            two_factor_price=140, three_factor_price=300,
        ))
        assert statement.two_factor_items == ()
        assert statement.three_factor_items == ()
        assert statement.total_amount == Decimal("0.00")

    def test_unknown_organization(self, seeded_service):
        """Verify a missing org is NotFound."""
        with pytest.raises(NotFound, match="Organization with ID ghost not found") as exc_info:
            seeded_service.billing_statement(BillingConfig("ghost", "2024-03-01", "2024-03-02"))
        assert exc_info.value.category is ErrorCategory.NOT_FOUND

    @pytest.mark.parametrize("config", [
        BillingConfig("", "2024-03-01", "2024-03-02"),
        BillingConfig("   ", "2024-03-01", "2024-03-02"),
        BillingConfig("org1", None, "2024-03-02"),
        BillingConfig("org1", "2024-03-05", "2024-03-01"),
        BillingConfig("org1", "03/01/2024", "2024-03-02"),
        BillingConfig("org1", "2024-03-01", "2024-03-02", two_factor_price=-1),
        BillingConfig("org1", "2024-03-01", "2024-03-02", three_factor_price=1.5),
    ])
    def test_invalid_input_rejected_before_fetch(self, config):
        """Verify invalid requests never touch the store or cache."""
        service, repository = mock_service()
        with pytest.raises(InvalidArgument):
            service.billing_statement(config)
        repository.get_organization.assert_not_called()
        repository.fetch_events.assert_not_called()
        assert len(service.memoizer.cache) == 0

    def test_repeat_request_served_from_cache(self):
        """Verify an identical request within the TTL reuses the statement."""
        service, repository = mock_service()
        config = BillingConfig("org1", "2024-03-01", "2024-03-31", 140, 300)
        first = service.billing_statement(config)
        second = service.billing_statement(config)
        assert first is second
        repository.fetch_events.assert_called_once()

    def test_prices_are_part_of_cache_key(self):
        """Verify a price change is never answered from a stale entry."""
        events = build_demo_events(DAY, days=1)
        service, repository = mock_service()
        repository.fetch_events.return_value = [e for e in events if e.org_id == "org1"]

        cheap = service.billing_statement(BillingConfig("org1", "2024-03-01", "2024-03-01", 100, 100))
        dear = service.billing_statement(BillingConfig("org1", "2024-03-01", "2024-03-01", 200, 100))
        assert repository.fetch_events.call_count == 2
        assert dear.two_factor_amount == cheap.two_factor_amount * 2

    def test_store_failure_is_upstream_and_not_cached(self):
        """Verify a failed fetch surfaces as UpstreamFailure and is retried next time."""
        service, repository = mock_service()
        repository.fetch_events.side_effect = [sqlite3.OperationalError("database is locked"), []]
        config = BillingConfig("org1", "2024-03-01", "2024-03-31")

        with pytest.raises(UpstreamFailure, match="Data fetch failed") as exc_info:
            service.billing_statement(config)
        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        assert exc_info.value.to_dict()["category"] == "upstream_failure"

        statement = service.billing_statement(config)
        assert statement.total_valid_count == 0
        assert repository.fetch_events.call_count == 2

    def test_org_lookup_failure_is_upstream(self):
        """Verify a failing organization lookup is UpstreamFailure."""
        service, repository = mock_service()
        repository.get_organization.side_effect = TimeoutError("query timed out")
        with pytest.raises(UpstreamFailure):
            service.billing_statement(BillingConfig("org1", "2024-03-01", "2024-03-31"))


class TestReconciliation:
    """Test reconciliation pages end to end."""

    def test_default_page_size_and_totals(self, seeded_service):
        """Verify rows per day and mode are paged with the default size."""
        config = BillingConfig("org1", "2024-03-01", "2024-03-03")
        page = seeded_service.reconciliation_page(config)
        # 3 days x 2 modes x 5 outcomes
        assert page.total_count == 30
        assert page.page_size == 20
        assert page.total_pages == 2
        assert len(page.items) == 20
        assert page.items[0].date.isoformat() == "2024-03-03"
        assert page.items[0].result_code == "0"

        last = seeded_service.reconciliation_page(config, page=2)
        assert len(last.items) == 10
        assert last.items[-1].date.isoformat() == "2024-03-01"

    def test_summary_matches_billing(self, seeded_service):
        """Verify summary success counts agree with billed valid totals."""
        config = BillingConfig("org2", "2024-03-01", "2024-03-03")
        page = seeded_service.reconciliation_page(config, page=1, page_size=5)
        statement = seeded_service.billing_statement(config)
        summary = {s.auth_mode: s for s in page.summary}
        assert summary["0x40"].success == statement.two_factor_valid_total
        assert summary["0x42"].success == statement.three_factor_valid_total
        assert summary["0x40"].total == statement.two_factor_total

    @pytest.mark.parametrize("page,page_size", [(0, 20), (1, 0), (1, 101)])
    def test_invalid_paging_rejected_before_fetch(self, page, page_size):
        """Verify bad paging is rejected without store access."""
        service, repository = mock_service()
        with pytest.raises(InvalidArgument):
            service.reconciliation_page(BillingConfig("org1", "2024-03-01", "2024-03-02"), page, page_size)
        repository.get_organization.assert_not_called()

    def test_unknown_organization(self, seeded_service):
        with pytest.raises(NotFound):
            seeded_service.reconciliation_page(BillingConfig("ghost", "2024-03-01", "2024-03-02"))

    def test_pages_cached_independently(self):
        """Verify each page is its own cache entry."""
        service, repository = mock_service()
        config = BillingConfig("org1", "2024-03-01", "2024-03-02")
        service.reconciliation_page(config, page=1, page_size=10)
        service.reconciliation_page(config, page=1, page_size=10)
        service.reconciliation_page(config, page=2, page_size=10)
        assert repository.fetch_events.call_count == 2


class TestOrgStats:
    """Test organization statistics."""

    def test_month_stats_busiest_first(self, seeded_service):
        """Verify every seeded org appears with proportional totals."""
        stats = seeded_service.org_stats("month", "2024-03-15")
        assert [s.org_id for s in stats] == ["org3", "org2", "org1"]
        org1 = stats[-1]
        # per day: 51 two-factor + 25 three-factor, 65 valid
        assert org1.total == 76 * 3
        assert org1.valid_total == 65 * 3
        assert stats[0].total == org1.total * 3

    def test_day_outside_data_is_empty(self, seeded_service):
        assert seeded_service.org_stats("day", "2024-04-01") == []

    def test_unknown_period_rejected(self):
        service, repository = mock_service()
        with pytest.raises(InvalidArgument):
            service.org_stats("week", "2024-03-01")
        repository.fetch_events_in_range.assert_not_called()


class TestClearCache:
    """Test operator cache flushes."""

    def test_clear_reports_and_forces_recompute(self):
        """Verify a flush acknowledges and the next request refetches."""
        service, repository = mock_service()
        config = BillingConfig("org1", "2024-03-01", "2024-03-31")
        service.billing_statement(config)

        ack = service.clear_cache()
        assert ack.success is True
        assert ack.message == "Cache cleared"
        assert ack.evicted == 1
        assert datetime.fromisoformat(ack.timestamp).tzinfo is not None
        assert set(ack.to_dict()) == {"success", "message", "timestamp", "evicted"}

        service.billing_statement(config)
        assert repository.fetch_events.call_count == 2

    def test_clear_empty_cache(self):
        service, _ = mock_service()
        assert service.clear_cache().evicted == 0

    def test_scoped_clear_keeps_other_views(self):
        """Verify a scoped flush evicts only that view's entries."""
        service, repository = mock_service()
        config = BillingConfig("org1", "2024-03-01", "2024-03-31")
        service.billing_statement(config)
        service.reconciliation_page(config)

        ack = service.clear_cache("billing")
        assert ack.message == "Cache cleared for billing"
        assert ack.evicted == 1

        service.billing_statement(config)
        service.reconciliation_page(config)
        assert repository.fetch_events.call_count == 3

    def test_unknown_scope_rejected(self):
        service, _ = mock_service()
        with pytest.raises(InvalidArgument, match="Unknown cache scope"):
            service.clear_cache("everything")


class TestCallStats:
    """Test call statistics."""

    def test_month_across_organizations(self, seeded_service):
        """Verify a month covers every org with no earlier traffic to compare."""
        stats = seeded_service.call_stats("month", "2024-03-15")
        # 76 calls per org per day, orgs weighted 1:2:3, over 3 days
        assert stats.total == 76 * 6 * 3
        assert [p.label for p in stats.series] == ["2024-03-01", "2024-03-02", "2024-03-03"]
        assert stats.previous_total == 0
        assert stats.change == 0
        assert stats.change_percentage == 0.0
        assert stats.org_id is None
        assert stats.result_codes[0].result_code == "0"

    def test_day_compared_with_previous_day(self, seeded_service):
        """Verify the hourly series and change versus the day before."""
        stats = seeded_service.call_stats("day", "2024-03-02")
        assert [p.label for p in stats.series] == ["09", "10", "11"]
        assert stats.total == 456
        assert stats.previous_total == 456
        assert stats.change == 0

    def test_organization_filter(self, seeded_service):
        stats = seeded_service.call_stats("day", "2024-03-02", org_id="org1")
        assert stats.total == 76
        assert stats.valid_total == 65
        assert [p.label for p in stats.series] == ["09"]
        assert (stats.org_id, stats.org_name) == ("org1", "Xingye")

    def test_unknown_organization(self, seeded_service):
        with pytest.raises(NotFound):
            seeded_service.call_stats("day", "2024-03-02", org_id="ghost")

    @pytest.mark.parametrize("period,day,org_id", [
        ("week", "2024-03-01", None),
        ("day", "2024/03/01", None),
        ("day", "2024-03-01", "  "),
    ])
    def test_invalid_input_rejected_before_fetch(self, period, day, org_id):
        service, repository = mock_service()
        with pytest.raises(InvalidArgument):
            service.call_stats(period, day, org_id=org_id)
        repository.get_organization.assert_not_called()
        repository.fetch_events_in_range.assert_not_called()

    def test_change_against_previous_period(self):
        """Verify the previous period is counted over the preceding day."""
        service, repository = mock_service()
        when = datetime(2024, 3, 2, 10, 0)
        repository.fetch_events_in_range.return_value = [
            EventRecord("org1", "Xingye", "0x40", "0", "Success", when),
            EventRecord("org1", "Xingye", "0x42", "210002", "Low quality", when),
            EventRecord("org1", "Xingye", "0x40", "-1", "Failed", when),
        ]
        repository.count_events.return_value = 2

        stats = service.call_stats("day", "2024-03-02")
        assert stats.change == 1
        assert stats.change_percentage == 50.0
        args, kwargs = repository.count_events.call_args
        assert args == (datetime(2024, 3, 1), datetime(2024, 3, 1, 23, 59, 59, 999999))
        assert kwargs["org_id"] is None

    def test_memoized_per_scope(self):
        """Verify repeated requests reuse the entry and org filters get their own."""
        settings = Settings(cache=CacheConfig(call_stats_ttl_ms=60_000))
        service, repository = mock_service(settings)
        first = service.call_stats("month", "2024-03-01")
        second = service.call_stats("month", "2024-03-31")
        assert first is second
        repository.fetch_events_in_range.assert_called_once()

        service.call_stats("month", "2024-03-01", org_id="org1")
        repository.fetch_events.assert_called_once()

        assert service.clear_cache("call-stats").evicted == 2

    def test_malformed_row_is_upstream_failure(self, seeded_service):
        """Verify an undecodable stored row reaches callers with its category."""
        conn = get_connection(seeded_service.repository.db_path)
        try:
            conn.execute(
                "INSERT INTO t_service_log VALUES ('bad', 'org1', '0x40', '0', 'ok', '2024-03-02 12:oo')"
            )
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(UpstreamFailure) as exc_info:
            seeded_service.call_stats("day", "2024-03-02", org_id="org1")
        assert exc_info.value.to_dict()["category"] == "upstream_failure"
