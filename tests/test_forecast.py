import os
import sys
from datetime import date

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from helpers import build_world, seed_deal
from lifecycle.errors import ValidationError
from lifecycle.forecast import forecast, period_key, qualifies, weighted_value
from lifecycle.models import Deal


def make_deal(deal_id, **fields):
    return Deal(id=deal_id, first_name="Client", last_name=deal_id, **fields)


class TestForecastMath:
    """Weighted values and period keys."""

    def test_scenario_march_bucket(self):
        deal = make_deal("d1", forecast_amount=20000, forecast_probability=25,
                         expected_closing_date=date(2026, 3, 18))

        periods = forecast([deal])

        assert [p.key for p in periods] == ["2026-03"]
        assert periods[0].total == pytest.approx(5000)
        assert periods[0].entries[0].weighted_value == pytest.approx(5000)

    def test_missing_probability_defaults_to_half(self):
        deal = make_deal("d1", forecast_amount=8000)

        assert weighted_value(deal) == pytest.approx(4000)

    def test_zero_probability_is_kept(self):
        deal = make_deal("d1", forecast_amount=8000, forecast_probability=0)

        assert weighted_value(deal) == 0

    def test_missing_amount_weighs_nothing(self):
        deal = make_deal("d1", expected_closing_date=date(2026, 5, 1))

        assert weighted_value(deal) == 0

    def test_month_and_week_keys(self):
        assert period_key(date(2026, 3, 5)) == "2026-03"
        assert period_key(date(2026, 1, 1), "week") == "2026-W01"
        assert period_key(date(2024, 12, 30), "week") == "2025-W01"

    def test_unknown_granularity_rejected(self):
        with pytest.raises(ValidationError):
            forecast([], granularity="quarter")


class TestForecastGrouping:
    """Which deals land in which period."""

    def test_payment_date_used_when_no_closing_date(self):
        deal = make_deal("d1", forecast_amount=1000, expected_payment_date=date(2026, 7, 9))

        assert [p.key for p in forecast([deal])] == ["2026-07"]

    def test_closing_date_wins_over_payment_date(self):
        deal = make_deal("d1", forecast_amount=1000, expected_closing_date=date(2026, 6, 30),
                         expected_payment_date=date(2026, 7, 9))

        assert [p.key for p in forecast([deal])] == ["2026-06"]

    def test_deal_without_date_is_excluded(self):
        undated = make_deal("d1", forecast_amount=50000, forecast_probability=90)

        assert qualifies(undated) is True
        assert forecast([undated]) == []

    def test_lost_deal_is_excluded(self):
        lost = make_deal("d1", status="lost", forecast_amount=1000, expected_closing_date=date(2026, 3, 1))

        assert qualifies(lost) is False
        assert forecast([lost]) == []

    def test_periods_sorted_ascending(self):
        deals = [
            make_deal("d1", forecast_amount=100, expected_closing_date=date(2026, 11, 2)),
            make_deal("d2", forecast_amount=100, expected_closing_date=date(2026, 2, 14)),
            make_deal("d3", forecast_amount=100, expected_payment_date=date(2025, 12, 31)),
        ]

        assert [p.key for p in forecast(deals)] == ["2025-12", "2026-02", "2026-11"]

    def test_period_totals_add_up_to_all_dated_deals(self):
        deals = [
            make_deal("d1", forecast_amount=12000, forecast_probability=40, expected_closing_date=date(2026, 3, 2)),
            make_deal("d2", forecast_amount=3000, expected_closing_date=date(2026, 3, 28)),
            make_deal("d3", forecast_amount=7000, forecast_probability=80, expected_payment_date=date(2026, 4, 6)),
            make_deal("d4", forecast_amount=9000, forecast_probability=10, expected_closing_date=date(2026, 4, 7)),
            make_deal("d5", forecast_amount=2500),
        ]

        for granularity in ("month", "week"):
            periods = forecast(deals, granularity)
            entries = [e.deal_id for p in periods for e in p.entries]

            assert sorted(entries) == ["d1", "d2", "d3", "d4"]
            assert sum(p.total for p in periods) == pytest.approx(
                sum(weighted_value(d) for d in deals[:4])
            )


class TestForecastAggregator:
    """Forecast over the pipeline board."""

    def setup_method(self):
        self.world = build_world()

    def test_reads_pipeline_deals(self):
        seed_deal(self.world, forecast_amount=20000, forecast_probability=25,
                  expected_closing_date="2026-03-10T09:00:00Z")
        lost = seed_deal(self.world, forecast_amount=40000, expected_closing_date="2026-03-12")
        seed_deal(self.world, forecast_amount=10000, expected_closing_date="2026-04-01")
        self.world.deals.refresh()
        self.world.deals.mark_lost(lost.id, "Visa refused elsewhere")

        periods = self.world.forecast.periods()

        assert [(p.key, p.total) for p in periods] == [("2026-03", 5000), ("2026-04", 5000)]
        assert self.world.forecast.total() == pytest.approx(10000)
