"""
Tests for the reconciliation engine (reconciliation.py).

Tests cover:
- Label resolution by id, by email, unresolved
- Snapshot arithmetic and degradation
- Chart series bucket counts, anchoring and gap filling
- Admin overview
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from calculations import FinancialSnapshot
from conftest import NOW, FlakyStore, add_report, add_withdrawal
from errors import NotFound, StoreUnavailable, ValidationError
from reconciliation import (
    LabelMatch, build_chart_series, get_admin_overview, get_chart_series, get_client_profile,
    get_share_percent, get_snapshot, resolve_label, scale_series,
)


# ============================================================
# Label resolution
# ============================================================

class TestResolveLabel:

    def test_by_id(self, store):
        resolution = resolve_label(store, 1, "aria@example.com")
        assert resolution.match is LabelMatch.BY_ID
        assert resolution.share_percent == Decimal("20")
        assert resolution.label_name == "Aria Label"

    def test_by_email_case_insensitive(self, store):
        resolution = resolve_label(store, 2, "basalt@EXAMPLE.com")
        assert resolution.match is LabelMatch.BY_EMAIL
        assert resolution.share_percent == Decimal("35")

    def test_email_fallback_skipped_without_email(self, store):
        resolution = resolve_label(store, 2, None)
        assert resolution.match is LabelMatch.UNRESOLVED

    def test_unresolved_has_zero_share(self, store):
        resolution = resolve_label(store, 3, "owner@example.com")
        assert resolution.match is LabelMatch.UNRESOLVED
        assert resolution.share_percent == Decimal("0")
        assert resolution.label_name == "Unknown Label"

    def test_id_match_wins_over_email(self, store):
        store.add_label("Shadow", "aria@example.com", 90)
        assert resolve_label(store, 1, "aria@example.com").label_name == "Aria Label"


# ============================================================
# Snapshot
# ============================================================

class TestSnapshot:

    def test_reference_scenario(self, scenario_store):
        snap = get_snapshot(scenario_store, 1)
        assert snap.total_gross == Decimal("10000")
        assert snap.share_percent == Decimal("20")
        assert snap.total_net == Decimal("2000")
        assert snap.total_deductions == Decimal("8000")
        assert snap.total_withdrawn == Decimal("1000")
        assert snap.pending_amount == Decimal("500")
        assert snap.balance == Decimal("500")
        assert snap.label_name == "Aria Label"

    def test_balance_identity(self, scenario_store):
        snap = get_snapshot(scenario_store, 1)
        assert snap.balance == snap.total_net - snap.total_withdrawn - snap.pending_amount
        assert snap.total_net + snap.total_deductions == snap.total_gross

    def test_rejected_withdrawals_ignored(self, scenario_store):
        add_withdrawal(scenario_store, 1, 250, "rejected")
        assert get_snapshot(scenario_store, 1).balance == Decimal("500")

    def test_empty_client(self, store):
        snap = get_snapshot(store, 3)
        for value in (snap.total_gross, snap.total_net, snap.total_deductions,
                      snap.total_withdrawn, snap.pending_amount, snap.balance, snap.share_percent):
            assert value == 0

    def test_unknown_client_does_not_raise(self, store):
        snap = get_snapshot(store, 999)
        assert snap.balance == 0
        assert snap.label_name == "Unknown Label"

    def test_client_without_label_keeps_gross(self, store):
        add_report(store, 3, date(2026, 9, 1), date(2026, 9, 30), 800)
        snap = get_snapshot(store, 3)
        assert snap.total_gross == Decimal("800")
        assert snap.total_net == 0
        assert snap.total_deductions == Decimal("800")

    def test_email_matched_share(self, store):
        add_report(store, 2, date(2026, 8, 1), date(2026, 8, 31), 1000)
        assert get_snapshot(store, 2).total_net == Decimal("350.00")

    def test_negative_balance(self, store):
        add_report(store, 1, date(2026, 9, 1), date(2026, 9, 30), 1000)
        add_withdrawal(store, 1, 300, "approved")
        assert get_snapshot(store, 1).balance == Decimal("-100")

    def test_other_clients_isolated(self, scenario_store):
        add_report(scenario_store, 2, date(2026, 9, 1), date(2026, 9, 30), 99999)
        assert get_snapshot(scenario_store, 1).total_gross == Decimal("10000")

    def test_idempotent(self, scenario_store):
        assert get_snapshot(scenario_store, 1) == get_snapshot(scenario_store, 1)

    def test_reads_fresh_after_write(self, scenario_store):
        before = get_snapshot(scenario_store, 1)
        add_report(scenario_store, 1, date(2026, 10, 10), date(2026, 10, 20), 1000)
        after = get_snapshot(scenario_store, 1)
        assert after.total_gross - before.total_gross == Decimal("1000")

    def test_store_failure_degrades_to_zero(self, scenario_store):
        flaky = FlakyStore(scenario_store, failing=("sum_withdrawals",))
        assert get_snapshot(flaky, 1) == FinancialSnapshot()

    def test_strict_propagates_store_failure(self, scenario_store):
        flaky = FlakyStore(scenario_store, failing=("sum_report_gross",))
        with pytest.raises(StoreUnavailable):
            get_snapshot(flaky, 1, strict=True)

    def test_share_percent_degrades(self, store):
        assert get_share_percent(FlakyStore(store), 1) == 0
        assert get_share_percent(store, 1) == Decimal("20")


# ============================================================
# Chart series
# ============================================================

class TestChartSeries:

    @pytest.mark.parametrize("view,count", [("monthly", 4), ("yearly", 12)])
    def test_bucket_count_with_no_reports(self, store, view, count):
        points = get_chart_series(store, 3, view, now=NOW)
        assert len(points) == count
        assert all(p.revenue == 0 for p in points)

    @pytest.mark.parametrize("view,count", [("monthly", 4), ("yearly", 12)])
    def test_bucket_count_with_many_reports(self, store, view, count):
        for month in range(1, 11):
            add_report(store, 1, date(2026, month, 1), date(2026, month, 28), 100 * month)
        assert len(get_chart_series(store, 1, view, now=NOW)) == count

    def test_monthly_window_ends_at_now(self, scenario_store):
        points = get_chart_series(scenario_store, 1, "monthly", now=NOW)
        assert [p.month for p in points] == ["2026-07", "2026-08", "2026-09", "2026-10"]
        assert [p.period_label for p in points] == ["Jul 26", "Aug 26", "Sep 26", "Oct 26"]
        assert [p.revenue for p in points] == [0, 0, Decimal("6000"), Decimal("4000")]

    def test_yearly_window_crosses_year(self, scenario_store):
        points = get_chart_series(scenario_store, 1, "yearly", now=NOW)
        assert points[0].month == "2025-11"
        assert points[-1].month == "2026-10"
        assert sum(p.revenue for p in points) == Decimal("10000")

    def test_future_report_moves_anchor(self, store):
        add_report(store, 1, date(2027, 2, 1), date(2027, 2, 28), 500)
        points = get_chart_series(store, 1, "monthly", now=NOW)
        assert [p.month for p in points] == ["2026-11", "2026-12", "2027-01", "2027-02"]
        assert points[-1].revenue == Decimal("500")

    def test_old_reports_fall_outside_window(self, store):
        add_report(store, 1, date(2024, 3, 1), date(2024, 3, 31), 700)
        points = get_chart_series(store, 1, "monthly", now=NOW)
        assert points[-1].month == "2026-10"
        assert all(p.revenue == 0 for p in points)

    def test_same_month_reports_are_summed(self, store):
        add_report(store, 1, date(2026, 10, 1), date(2026, 10, 15), 100)
        add_report(store, 1, date(2026, 10, 16), date(2026, 10, 31), 50)
        assert get_chart_series(store, 1, "monthly", now=NOW)[-1].revenue == Decimal("150")

    def test_series_is_gross(self, scenario_store):
        points = get_chart_series(scenario_store, 1, "monthly", now=NOW)
        assert points[2].revenue == Decimal("6000")

    def test_scale_series_to_net(self, scenario_store):
        points = scale_series(get_chart_series(scenario_store, 1, "monthly", now=NOW), 20)
        assert [p.revenue for p in points] == [0, 0, Decimal("1200"), Decimal("800")]

    def test_unknown_view(self, store):
        with pytest.raises(ValidationError):
            get_chart_series(store, 1, "weekly", now=NOW)

    def test_store_failure_gives_zero_window(self, scenario_store):
        points = get_chart_series(FlakyStore(scenario_store), 1, "yearly", now=NOW)
        assert len(points) == 12
        assert all(p.revenue == 0 for p in points)

    def test_build_from_raw_pairs(self):
        points = build_chart_series([("2026-10", "12.50"), ("2026-10", 2.5)], "monthly",
                                    now=datetime(2026, 10, 1))
        assert points[-1].to_dict() == {"date": "Oct 26", "month": "2026-10", "revenue": 15.0}


# ============================================================
# Profile & admin overview
# ============================================================

class TestProfileAndOverview:

    def test_client_profile(self, store):
        profile = get_client_profile(store, 2)
        assert profile["revenueShare"] == 35.0
        assert profile["labelMatch"] == "by_email"
        assert profile["canManageArtists"] is False
        assert profile["currency"] == "USD"

    def test_admin_profile(self, store):
        assert get_client_profile(store, 3)["canManageArtists"] is True

    def test_missing_profile(self, store):
        with pytest.raises(NotFound):
            get_client_profile(store, 42)

    def test_admin_overview(self, scenario_store):
        scenario_store.insert_royalties([
            {"user_id": 1, "amount": "10", "date": date(2026, 9, 3), "description": "x", "source": "y"},
            {"user_id": 2, "amount": "5", "date": date(2026, 9, 20), "description": "x", "source": "y"},
        ])
        overview = get_admin_overview(scenario_store).to_dict()
        assert overview["royalties"] == [{"month": "2026-09", "total": 15.0}]
        assert len(overview["withdrawals"]) == 1
        assert overview["withdrawals"][0]["total"] == 1000.0

    def test_admin_overview_degrades(self, store):
        assert get_admin_overview(FlakyStore(store)).to_dict() == {"royalties": [], "withdrawals": []}
