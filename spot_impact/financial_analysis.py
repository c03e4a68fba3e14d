"""
Financial Analysis Module
Translating measured and projected spot impact into dollar values

This module:
- Computes ROI and ROAS against the spot investment
- Computes payback ratios and the break-even window of a projection
- Generates business-friendly narratives for reports
"""

from typing import Dict, Mapping, Optional, Sequence


def calculate_roi(revenue: float, cost: float) -> Dict[str, float]:
    """
    ROI and ROAS of a spend

    ROI = (revenue - cost) / cost * 100 and ROAS = revenue / cost; both
    are 0 when there is no cost to measure against.

    >>> calculate_roi(150, 100)['roi']
    50.0
    """
    revenue = float(revenue)
    cost = float(cost)
    profit = revenue - cost

    if cost > 0:
        roi = profit / cost * 100
        roas = revenue / cost
    else:
        roi = 0.0
        roas = 0.0

    return {
        'roi': roi,
        'roas': roas,
        'revenue': revenue,
        'cost': cost,
        'profit': profit,
    }


def payback_ratio(revenue: float, investment: float) -> float:
    """Share of the investment recovered by ``revenue`` (0 without investment)"""
    if investment <= 0:
        return 0.0
    return revenue / investment


def break_even_window(
    revenue_by_window: Mapping[str, float],
    investment: float,
    order: Optional[Sequence[str]] = None,
) -> Optional[str]:
    """
    First window whose cumulative revenue covers the investment

    Returns None when the investment is never recovered. With no
    investment the first window breaks even.
    """
    keys = list(order) if order is not None else list(revenue_by_window)
    cumulative = 0.0
    for key in keys:
        cumulative += revenue_by_window.get(key, 0.0)
        if cumulative >= investment:
            return key
    return None


class FinancialAnalyzer:
    """Translate incremental revenue into ROI metrics"""

    def __init__(self, revenue: float, cost: float = 0, label: str = 'spot'):
        """
        Args:
            revenue: Incremental revenue attributed to the spot
            cost: Investment in the spot
            label: Name used in narratives
        """
        self.revenue = revenue
        self.cost = cost
        self.label = label
        self.financial_results: Dict[str, float] = {}

    def calculate_roi(self):
        """Calculate Return on Investment metrics"""
        self.financial_results = calculate_roi(self.revenue, self.cost)
        self.financial_results['is_profitable'] = self.financial_results['roi'] > 0
        return self

    def get_summary(self) -> Dict[str, float]:
        if not self.financial_results:
            self.calculate_roi()
        return self.financial_results

    def generate_business_narrative(self) -> str:
        """Create narrative summary for stakeholders"""
        r = self.get_summary()

        narrative = []
        if r['revenue'] > 0:
            narrative.append(f"The {self.label} generated an estimated ${r['revenue']:,.2f} in incremental revenue.")
        else:
            narrative.append(f"The {self.label} generated no measurable incremental revenue.")

        if r['cost'] > 0:
            narrative.append(
                f"After the ${r['cost']:,.2f} investment the net result is ${r['profit']:,.2f} "
                f"(ROI {r['roi']:.1f}%, ROAS {r['roas']:.2f}x)."
            )
            if r['roas'] > 3:
                narrative.append("This is an excellent return.")
            elif r['roi'] > 0:
                narrative.append("The spot was profitable.")
            else:
                narrative.append("The spot did not achieve positive ROI.")
        else:
            narrative.append("No investment data available for ROI calculation.")

        return "\n".join(narrative)
