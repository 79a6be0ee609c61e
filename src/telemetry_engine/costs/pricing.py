"""Unit-price tables for converting usage counters into currency."""

from __future__ import annotations

from types import MappingProxyType
from typing import Iterator, Mapping

# Example rates in USD per unit; deployments are expected to supply their own.
DEFAULT_UNIT_PRICES: Mapping[str, float] = MappingProxyType(
    {
        "requests": 0.15 / 1_000_000,
        "cpu_time": 0.02 / 1_000_000,
        "storage_reads": 0.001 / 1_000_000,
        "storage_writes": 1.0 / 1_000_000,
        "ingestion_writes": 0.25 / 1_000_000,
        "cache_reads": 0.5 / 1_000_000,
        "cache_writes": 5.0 / 1_000_000,
    }
)


class PriceTable(Mapping[str, float]):
    """Immutable resource -> unit price mapping.

    Unknown resource types price at zero so a missing entry degrades to an
    under-estimate instead of aborting the cost run.
    """

    def __init__(self, prices: Mapping[str, float] | None = None) -> None:
        source = DEFAULT_UNIT_PRICES if prices is None else prices
        validated = {}
        for resource, price in source.items():
            if price < 0:
                raise ValueError(f"unit price for '{resource}' must be non-negative")
            validated[str(resource)] = float(price)
        self._prices: Mapping[str, float] = MappingProxyType(validated)

    def price(self, resource_type: str) -> float:
        return self._prices.get(resource_type, 0.0)

    def cost(self, resource_type: str, usage: float) -> float:
        return calculate_cost(usage, self.price(resource_type))

    def __getitem__(self, key: str) -> float:
        return self._prices[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._prices)

    def __len__(self) -> int:
        return len(self._prices)


def calculate_cost(usage: float, unit_price: float) -> float:
    """Return the USD cost of ``usage`` units at ``unit_price``."""

    if usage <= 0 or unit_price <= 0:
        return 0.0
    return round(usage * unit_price, 9)
