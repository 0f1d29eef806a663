"""Year-over-year deltas of statement line items for the generator's prompt context."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple


# (statement field, display name)
INCOME_METRICS: Tuple[Tuple[str, str], ...] = (
    ("revenue", "Revenue"),
    ("grossProfit", "Gross Profit"),
    ("operatingIncome", "Operating Income"),
    ("netIncome", "Net Income"),
    ("eps", "EPS"),
    ("ebitda", "EBITDA"),
    ("grossProfitRatio", "Gross Margin"),
    ("operatingIncomeRatio", "Operating Margin"),
    ("netIncomeRatio", "Net Margin"),
)

CASHFLOW_METRICS: Tuple[Tuple[str, str], ...] = (
    ("operatingCashFlow", "Operating Cash Flow"),
    ("freeCashFlow", "Free Cash Flow"),
    ("capitalExpenditure", "Capital Expenditure"),
)


@dataclass
class DeltaItem:
    """
    Change in one line item between two fiscal periods.

    Representation Invariants:
    - metric_name is non-empty
    - delta and pct_change are set only when both values exist
    """
    metric_name: str
    current_value: Optional[float]
    previous_value: Optional[float]
    delta: Optional[float] = None
    pct_change: Optional[float] = None

    def __post_init__(self) -> None:
        if self.current_value is not None and self.previous_value is not None:
            self.delta = self.current_value - self.previous_value

            if self.previous_value != 0:
                self.pct_change = (self.delta / abs(self.previous_value)) * 100.0
            elif self.current_value != 0:
                self.pct_change = float('inf') if self.current_value > 0 else float('-inf')
            else:
                self.pct_change = 0.0

    def to_dict(self) -> Dict[str, Any]:
        pct = self.pct_change
        if pct is not None and abs(pct) == float('inf'):
            pct = None
        return {
            "metric": self.metric_name,
            "current": self.current_value,
            "previous": self.previous_value,
            "delta": self.delta,
            "pctChange": round(pct, 2) if pct is not None else None,
        }


def _number(row: Dict[str, Any], field_name: str) -> Optional[float]:
    value = row.get(field_name)
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def compare_rows(
    current: Dict[str, Any],
    previous: Dict[str, Any],
    metrics: Sequence[Tuple[str, str]]
) -> List[DeltaItem]:
    """
    Compare two statement rows field by field.

    Postconditions:
    - One DeltaItem per metric present in either row, in metric order
    """
    deltas: List[DeltaItem] = []
    for field_name, display_name in metrics:
        current_val = _number(current, field_name)
        previous_val = _number(previous, field_name)
        if current_val is not None or previous_val is not None:
            deltas.append(DeltaItem(display_name, current_val, previous_val))
    return deltas


def year_over_year(rows: Sequence[Dict[str, Any]], metrics: Sequence[Tuple[str, str]]) -> List[DeltaItem]:
    """
    Deltas between the two most recent periods of a statement.

    Rows are taken newest first (the providers' order). Fewer than two rows
    yield no deltas.
    """
    usable = [r for r in rows if isinstance(r, dict)]
    if len(usable) < 2:
        return []
    return compare_rows(usable[0], usable[1], metrics)


def format_delta_summary(deltas: List[DeltaItem]) -> str:
    """
    Format delta items as bullet lines.

    Args:
        deltas: List of DeltaItem objects

    Returns:
        Formatted summary string with bullet points
    """
    if not deltas:
        return "No changes detected."

    summary_lines = []

    for delta in deltas:
        if delta.current_value is None and delta.previous_value is None:
            continue

        if delta.current_value is None:
            summary_lines.append(f"- {delta.metric_name}: Not reported (was {_format_value(delta.previous_value, delta.metric_name)})")
        elif delta.previous_value is None:
            summary_lines.append(f"- {delta.metric_name}: {_format_value(delta.current_value, delta.metric_name)} (new)")
        else:
            change_str = ""
            if delta.pct_change is not None:
                if abs(delta.pct_change) == float('inf'):
                    change_str = " (new)"
                else:
                    sign = "+" if delta.pct_change >= 0 else ""
                    change_str = f" ({sign}{delta.pct_change:.1f}%)"

            summary_lines.append(
                f"- {delta.metric_name}: {_format_value(delta.current_value, delta.metric_name)} "
                f"vs {_format_value(delta.previous_value, delta.metric_name)}{change_str}"
            )

    return "\n".join(summary_lines)


def _format_value(value: float, metric_name: str) -> str:
    """Statement values are raw dollars; margins are fractions."""
    if 'Margin' in metric_name:
        return f"{value * 100:.1f}%"
    if metric_name == 'EPS':
        return f"${value:.2f}"
    magnitude = abs(value)
    if magnitude >= 1e9:
        return f"${value / 1e9:.2f}B"
    if magnitude >= 1e6:
        return f"${value / 1e6:.2f}M"
    return f"${value:,.0f}"
