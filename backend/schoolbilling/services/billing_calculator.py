# Overview: Pure line-item calculations for hybrid and standard lesson billing.

"""
Lesson Billing Calculator

WHY: Term invoices are derived from what a family is enrolled in. A hybrid
lesson alternates group weeks and individual weeks, each billed at its own
rate; every other lesson is a flat rate per term week.

Nothing here touches the database or the app config: the same pattern and
rates always produce the same line items. Rate defaults are resolved by
the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from ..errors import ValidationError


# Base rates per 45-minute lesson, in cents
DEFAULT_BASE_RATES_CENTS = {
    "INDIVIDUAL": 5000,
    "GROUP": 3000,
    "BAND": 2500,
    "HYBRID": 3500,
}
FALLBACK_BASE_RATE_CENTS = 3500
BASE_RATE_DURATION_MINS = 45


@dataclass(frozen=True)
class LineItemInput:
    """Unsaved invoice line."""
    description: str
    quantity: int
    unit_price_cents: int

    @property
    def total_cents(self) -> int:
        return self.quantity * self.unit_price_cents


@dataclass(frozen=True)
class HybridBillingResult:
    group_weeks_count: int
    individual_weeks_count: int
    group_weeks_price_cents: int
    individual_weeks_price_cents: int
    line_items: tuple[LineItemInput, ...]

    @property
    def total_price_cents(self) -> int:
        return self.group_weeks_price_cents + self.individual_weeks_price_cents


def _require_rate(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer number of cents")
    if value < 0:
        raise ValidationError(f"{name} cannot be negative")
    return value


def _week_set(name: str, weeks: Iterable | None) -> frozenset[int]:
    result = set()
    for week in weeks or ():
        if isinstance(week, bool) or not isinstance(week, int) or week < 1:
            raise ValidationError(f"{name} must contain positive week numbers", details={"week": week})
        result.add(week)
    return frozenset(result)


def validate_week_pattern(group_weeks, individual_weeks) -> tuple[frozenset[int], frozenset[int]]:
    """
    Normalize a hybrid pattern into two disjoint week sets.

    Raises ValidationError if a week appears in both sets.
    """
    group = _week_set("group_weeks", group_weeks)
    individual = _week_set("individual_weeks", individual_weeks)
    overlap = group & individual
    if overlap:
        raise ValidationError(
            "A week cannot be both a group week and an individual week",
            details={"weeks": sorted(overlap)},
        )
    return group, individual


def calculate_hybrid_billing(
    group_weeks,
    individual_weeks,
    group_rate_cents: int,
    individual_rate_cents: int,
    *,
    label: str = "Hybrid lesson",
) -> HybridBillingResult:
    """
    Derive at most two line items from a hybrid week pattern.

    One line for the group weeks at the group rate and one for the
    individual weeks at the individual rate. A zero week count produces
    no line at all.
    """
    group, individual = validate_week_pattern(group_weeks, individual_weeks)
    group_rate_cents = _require_rate("group_rate_cents", group_rate_cents)
    individual_rate_cents = _require_rate("individual_rate_cents", individual_rate_cents)

    line_items = []
    if group:
        line_items.append(LineItemInput(
            description=f"{label} Group Sessions ({len(group)} weeks)",
            quantity=len(group),
            unit_price_cents=group_rate_cents,
        ))
    if individual:
        line_items.append(LineItemInput(
            description=f"{label} Individual Sessions ({len(individual)} weeks)",
            quantity=len(individual),
            unit_price_cents=individual_rate_cents,
        ))

    return HybridBillingResult(
        group_weeks_count=len(group),
        individual_weeks_count=len(individual),
        group_weeks_price_cents=len(group) * group_rate_cents,
        individual_weeks_price_cents=len(individual) * individual_rate_cents,
        line_items=tuple(line_items),
    )


def calculate_standard_billing(term_weeks: int, rate_cents: int, *, label: str) -> LineItemInput:
    """Flat rate times term weeks for a non-hybrid lesson."""
    if isinstance(term_weeks, bool) or not isinstance(term_weeks, int) or term_weeks < 1:
        raise ValidationError("term_weeks must be a positive integer")
    rate_cents = _require_rate("rate_cents", rate_cents)
    return LineItemInput(
        description=f"{label} ({term_weeks} weeks)",
        quantity=term_weeks,
        unit_price_cents=rate_cents,
    )


def default_lesson_rate_cents(lesson_type: str, duration_mins: int) -> int:
    """Per-lesson rate scaled from the 45-minute base rate for the lesson type."""
    base = DEFAULT_BASE_RATES_CENTS.get((lesson_type or "").upper(), FALLBACK_BASE_RATE_CENTS)
    return round(base * duration_mins / BASE_RATE_DURATION_MINS)
