"""
Spend Aggregator — monthly spend across a subscription collection
==================================================================

Each subscription is normalised to a monthly amount in its own currency
(billing_cycle.monthly_equivalent) and then converted to the display
currency. Conversions are independent and run concurrently; results are
combined only after every conversion has finished, so no partial total is
ever exposed.

A subscription whose conversion fails (RateUnavailable, or a stored
currency outside the supported set) is left out of the sums, logged, and
listed in SpendSummary.unconverted so the caller can flag it.

SpendTracker wraps the aggregator for long-lived consumers (dashboard
views, websocket sessions): it exposes an explicit in_progress flag and
drops results from superseded or closed computations.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from subtrack.core.errors import RateUnavailable, UnknownCurrency
from subtrack.models.currency import parse_currency
from subtrack.services.billing_cycle import monthly_equivalent, parse_billing_cycle
from subtrack.services.currency_service import CurrencyService

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"


class GroupBy(str, Enum):
    CATEGORY = "category"
    BILLING_CYCLE = "billing_cycle"


@dataclass(frozen=True)
class SpendLine:
    """The slice of a subscription the aggregator needs."""

    subscription_id: str
    price: float
    currency: str
    billing_cycle: str
    category_name: Optional[str] = None

    @classmethod
    def from_subscription(cls, sub, category_names: Mapping[str, str]) -> "SpendLine":
        return cls(
            subscription_id=str(sub.id),
            price=sub.price,
            currency=sub.currency,
            billing_cycle=sub.billing_cycle,
            category_name=category_names.get(sub.category_id) if sub.category_id else None,
        )


@dataclass
class SpendSummary:
    currency: str
    total: float = 0.0
    by_category: Dict[str, float] = field(default_factory=dict)
    by_billing_cycle: Dict[str, float] = field(default_factory=dict)
    subscription_count: int = 0
    unconverted: List[str] = field(default_factory=list)


def _group_key(line: SpendLine, group_by: GroupBy) -> str:
    if group_by == GroupBy.BILLING_CYCLE:
        return parse_billing_cycle(line.billing_cycle).value
    return line.category_name or UNCATEGORIZED


def _grouped(pairs: Iterable, group_by: GroupBy) -> Dict[str, float]:
    buckets: Dict[str, List[float]] = defaultdict(list)
    for line, amount in pairs:
        buckets[_group_key(line, group_by)].append(amount)
    return {key: math.fsum(values) for key, values in buckets.items()}


class SpendAggregator:
    def __init__(self, currency_service: CurrencyService):
        self._currency = currency_service

    async def _convert_line(self, line: SpendLine, display_currency) -> Optional[float]:
        monthly = monthly_equivalent(line.price, line.billing_cycle)
        try:
            return await self._currency.convert(monthly, line.currency, display_currency)
        except (RateUnavailable, UnknownCurrency) as exc:
            logger.warning(
                "Excluding subscription %s from spend total: %s",
                line.subscription_id, exc,
            )
            return None

    async def _converted(self, lines: Sequence[SpendLine], display_currency):
        amounts = await asyncio.gather(
            *(self._convert_line(line, display_currency) for line in lines)
        )
        return list(zip(lines, amounts))

    async def summarize(self, lines: Sequence[SpendLine], display_currency) -> SpendSummary:
        display = parse_currency(display_currency)
        pairs = await self._converted(lines, display)
        ok = [(line, amount) for line, amount in pairs if amount is not None]
        return SpendSummary(
            currency=display.value,
            total=math.fsum(amount for _, amount in ok),
            by_category=_grouped(ok, GroupBy.CATEGORY),
            by_billing_cycle=_grouped(ok, GroupBy.BILLING_CYCLE),
            subscription_count=len(lines),
            unconverted=[line.subscription_id for line, amount in pairs if amount is None],
        )

    async def aggregate(
        self,
        lines: Sequence[SpendLine],
        display_currency,
        group_by: Optional[Union[GroupBy, str]] = None,
    ) -> Union[float, Dict[str, float]]:
        """Total monthly spend, or per-group totals when *group_by* is given."""
        display = parse_currency(display_currency)
        pairs = [(line, amount) for line, amount in await self._converted(lines, display) if amount is not None]
        if group_by is None:
            return math.fsum(amount for _, amount in pairs)
        return _grouped(pairs, GroupBy(group_by))


class SpendTracker:
    """Keeps a SpendSummary current for one consumer.

    ``summary`` is only replaced by the most recent computation; while one
    is running ``in_progress`` is True and ``total`` is None rather than 0.
    """

    def __init__(
        self,
        aggregator: SpendAggregator,
        display_currency,
        lines: Sequence[SpendLine] = (),
        on_update: Optional[Callable[[SpendSummary], None]] = None,
    ):
        self._aggregator = aggregator
        self._display = parse_currency(display_currency)
        self._lines: List[SpendLine] = list(lines)
        self._on_update = on_update
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self.summary: Optional[SpendSummary] = None
        self.in_progress = False

    @property
    def total(self) -> Optional[float]:
        if self.in_progress or self.summary is None:
            return None
        return self.summary.total

    @property
    def closed(self) -> bool:
        return self._closed

    async def refresh(self) -> Optional[SpendSummary]:
        """Recompute; returns None if the result was superseded or closed."""
        if self._closed:
            return None
        self._generation += 1
        generation = self._generation
        self.in_progress = True
        try:
            summary = await self._aggregator.summarize(self._lines, self._display)
        except Exception:
            if generation == self._generation:
                self.in_progress = False
            raise

        if self._closed or generation != self._generation:
            logger.debug("Discarding stale spend computation (generation %d)", generation)
            return None

        self.summary = summary
        self.in_progress = False
        if self._on_update is not None:
            self._on_update(summary)
        return summary

    def schedule_refresh(self) -> asyncio.Task:
        """Start a refresh in the background, cancelling one already running."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.in_progress = True
        self._task = asyncio.create_task(self.refresh())
        return self._task

    def set_inputs(self, lines: Sequence[SpendLine], display_currency) -> asyncio.Task:
        """Replace lines and display currency together and recompute in the background."""
        self._lines = list(lines)
        self._display = parse_currency(display_currency)
        return self.schedule_refresh()

    async def set_subscriptions(self, lines: Sequence[SpendLine]) -> Optional[SpendSummary]:
        self._lines = list(lines)
        return await self.refresh()

    async def set_display_currency(self, currency) -> Optional[SpendSummary]:
        self._display = parse_currency(currency)
        return await self.refresh()

    def close(self) -> None:
        """Detach the consumer; pending results are dropped."""
        self._closed = True
        self.in_progress = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
