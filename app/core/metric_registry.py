"""AdPulse — Derived Metric Registry.

The ratios stored next to every daily metric row. Connectors never send
derived values themselves; they are always recomputed here from the base
columns so every provider uses one formula.
"""

from typing import Dict, Optional


class MetricDefinition:
    """A derived ratio ``numerator / denominator * scale``."""

    def __init__(
        self,
        name: str,
        numerator: str,
        denominator: str,
        scale: float = 1.0,
        unit: str = "",
        description: str = "",
    ):
        self.name = name
        self.numerator = numerator
        self.denominator = denominator
        self.scale = scale
        self.unit = unit
        self.description = description

    def compute(self, values: Dict[str, Optional[float]]) -> Optional[float]:
        """None when either side is missing or the denominator is zero."""
        numerator = values.get(self.numerator)
        denominator = values.get(self.denominator)
        if numerator is None or not denominator:
            return None
        return round(numerator * self.scale / denominator, 6)

    def __repr__(self) -> str:
        return f"<Metric {self.name} = {self.numerator}/{self.denominator}>"


# ─────────────────────────────────────────────
# DERIVED METRICS — Computed from base columns
# ─────────────────────────────────────────────

DERIVED_METRICS: Dict[str, MetricDefinition] = {
    "ctr": MetricDefinition("ctr", "clicks", "impressions", 100.0, "%", "Clicks / impressions"),
    "cpc": MetricDefinition("cpc", "spend", "clicks", unit="currency", description="Cost per click"),
    "cpa": MetricDefinition(
        "cpa", "spend", "conversions", unit="currency", description="Cost per acquisition"
    ),
    # Revenue is only known once the commerce connector has attributed it
    "roas": MetricDefinition("roas", "revenue", "spend", unit="ratio", description="Return on ad spend"),
}


def derive_rates(
    spend: float,
    impressions: int,
    clicks: int,
    conversions: float,
    revenue: Optional[float],
) -> Dict[str, Optional[float]]:
    """Compute ctr/cpc/cpa/roas. Undefined ratios (zero denominator) are None."""
    values = {
        "spend": spend,
        "impressions": impressions,
        "clicks": clicks,
        "conversions": conversions,
        "revenue": revenue,
    }
    return {name: metric.compute(values) for name, metric in DERIVED_METRICS.items()}
