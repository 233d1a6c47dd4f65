"""Probability-weighted revenue forecast over the deal pipeline."""
from datetime import date
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from lifecycle.deals import DealPipeline
from lifecycle.errors import ValidationError
from lifecycle.models import Deal

DEFAULT_PROBABILITY = 50
GRANULARITIES = ("month", "week")


class ForecastEntry(BaseModel):
    deal_id: str
    name: str
    forecast_amount: float
    probability: float
    weighted_value: float
    forecast_date: date


class ForecastPeriod(BaseModel):
    key: str
    entries: List[ForecastEntry]
    total: float


def qualifies(deal: Deal) -> bool:
    """Non-lost deals carrying any forecast field."""
    if deal.is_lost:
        return False
    return (
        deal.expected_closing_date is not None
        or deal.expected_payment_date is not None
        or deal.forecast_amount is not None
    )


def forecast_date(deal: Deal) -> Optional[date]:
    return deal.expected_closing_date or deal.expected_payment_date


def probability(deal: Deal) -> float:
    if deal.forecast_probability is None:
        return DEFAULT_PROBABILITY
    return deal.forecast_probability


def weighted_value(deal: Deal) -> float:
    return (deal.forecast_amount or 0.0) * probability(deal) / 100


def period_key(day: date, granularity: str = "month") -> str:
    """``YYYY-MM`` for months, ISO ``YYYY-Www`` for weeks."""
    if granularity == "month":
        return f"{day.year:04d}-{day.month:02d}"
    if granularity == "week":
        iso_year, iso_week, _ = day.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    raise ValidationError(f"Unknown forecast granularity {granularity!r}")


def forecast(deals: Iterable[Deal], granularity: str = "month") -> List[ForecastPeriod]:
    """
    Group qualifying deals into periods by closing (or else payment) date.

    Deals without either date are left out rather than bucketed as unknown.

    Args:
        deals: Pipeline deals
        granularity: "month" or "week"

    Returns:
        Periods sorted by key, each with its entries and weighted total
    """
    if granularity not in GRANULARITIES:
        raise ValidationError(f"Unknown forecast granularity {granularity!r}")

    buckets: Dict[str, List[ForecastEntry]] = {}
    for deal in deals:
        day = forecast_date(deal)
        if not qualifies(deal) or day is None:
            continue
        entry = ForecastEntry(
            deal_id=deal.id,
            name=deal.full_name or deal.company or deal.id,
            forecast_amount=deal.forecast_amount or 0.0,
            probability=probability(deal),
            weighted_value=weighted_value(deal),
            forecast_date=day,
        )
        buckets.setdefault(period_key(day, granularity), []).append(entry)

    return [
        ForecastPeriod(
            key=key,
            entries=sorted(buckets[key], key=lambda e: (e.forecast_date, e.deal_id)),
            total=sum(e.weighted_value for e in buckets[key]),
        )
        for key in sorted(buckets)
    ]


class ForecastAggregator:
    """Forecast views over the deals currently on a pipeline board."""

    def __init__(self, pipeline: DealPipeline):
        self.pipeline = pipeline

    def periods(self, granularity: str = "month") -> List[ForecastPeriod]:
        return forecast(self.pipeline.board.values(), granularity)

    def total(self, granularity: str = "month") -> float:
        return sum(p.total for p in self.periods(granularity))
