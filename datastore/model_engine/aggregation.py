"""
Time-bucketed aggregation for charts.

A chart request names a dimension (the x axis), an optional breakdown
(one dataset per value), a metric and how to total it. configure_grouping
turns that into group_by_raw entries on a query specification:

    _id:   {"period": {"$dateToString": {...}}, "group": "$<breakdown>"}
    total: {"$sum": "$<metric>"}            (or $max/$min/$avg, $sum 1)

The grouped rows are then laid out as labels plus one dataset per group,
with every period between the window start and end present, so gaps
read as zero.

Invariants:
    - Period keys use the same tokens as the document store's
      $dateToString, so bucket keys from storage and from period_keys()
      compare equal
    - Bucketing by time requires a date dimension
    - At most MAX_GROUPS datasets are produced

How to change safely:
    - A new Periodicity needs an entry in PERIOD_FORMATS and a case in
      _bucket_start and _advance
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .schema.types import PRIMARY_KEY, Model
from .values import coerce_datetime, format_date_pattern, utc_now

if TYPE_CHECKING:
    from .query.spec import QuerySpec

logger = logging.getLogger(__name__)

MAX_GROUPS = 16
NONE_KEY = "_none_"
ALL_KEY = "all"

PALETTE = (
    "#FF6384", "#36A2EB", "#FFCE56", "#4BC0C0", "#9966FF",
    "#FF9F40", "#C9CBCF", "#55efc4", "#74b9ff", "#a29bfe",
    "#00b894", "#0984e3", "#6c5ce7", "#fdcb6e", "#e17055",
    "#d63031", "#e84393", "#badc58", "#f0932b", "#686de0",
)


class ChartType(Enum):
    PIE = "PIE"
    LINEAR = "LINEAR"


class TotalType(Enum):
    """How grouped values are totalled."""

    COUNT = "COUNT"
    SUM = "SUM"
    MAX = "MAX"
    MIN = "MIN"
    AVG = "AVG"
    AVERAGE = "AVERAGE"

    def accumulator(self, metric: Optional[str]) -> Dict[str, Any]:
        """$group accumulator for this total over ``metric``."""
        if self == TotalType.COUNT or not metric:
            return {"$sum": 1}
        name = {
            TotalType.SUM: "$sum",
            TotalType.MAX: "$max",
            TotalType.MIN: "$min",
            TotalType.AVG: "$avg",
            TotalType.AVERAGE: "$avg",
        }[self]
        return {name: f"${metric}"}


class Periodicity(Enum):
    NONE = "NONE"
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    DAY_HOURS = "DAY_HOURS"
    WEEKLY = "WEEKLY"
    WEEK_DAYS = "WEEK_DAYS"
    MONTHLY = "MONTHLY"
    MONTH_DAYS = "MONTH_DAYS"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"
    YEAR_MONTH = "YEAR_MONTH"


def _enum_from_str(enum_cls: type, value: Any, param: str) -> Any:
    normalized = str(value).strip().upper()
    for member in enum_cls:
        if member.value == normalized:
            return member
    valid = [m.value for m in enum_cls]
    raise ConfigurationError(f"Invalid {param} '{value}'. Valid values: {valid}", field_name=param)


# $dateToString formats of the bucketed periodicities
PERIOD_FORMATS = {
    Periodicity.HOURLY: "%Y-%m-%d %H:00",
    Periodicity.DAILY: "%Y-%m-%d",
    Periodicity.WEEKLY: "%V-Week-%Y",
    Periodicity.MONTHLY: "%Y-%m",
    Periodicity.YEARLY: "%Y",
}

# Window used when neither the data nor the filter bounds the dimension
DEFAULT_WINDOWS = {
    Periodicity.HOURLY: ("days", 1),
    Periodicity.DAILY: ("days", 31),
    Periodicity.WEEKLY: ("days", 84),
    Periodicity.MONTHLY: ("months", 12),
    Periodicity.YEARLY: ("months", 48),
    Periodicity.NONE: ("months", 12),
}


def _first(params: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        value = params.get(name)
        if value not in (None, ""):
            return value
    return default


@dataclass(frozen=True)
class ChartParams:
    """Chart request.

    Attributes:
        dimension: x axis field
        breakdown: Field whose values become separate datasets
        metric: Field totalled on the y axis
        total: How values are totalled
        chart_type: PIE or LINEAR
        periodicity: Time bucket size (NONE groups by dimension values)
        dimension_where: Filter on the dimension's related model
        breakdown_where: Filter on the breakdown's related model
    """

    dimension: str = ""
    breakdown: str = ""
    metric: str = ""
    total: TotalType = TotalType.COUNT
    chart_type: ChartType = ChartType.LINEAR
    periodicity: Periodicity = Periodicity.NONE
    dimension_where: Mapping[str, Any] = field(default_factory=dict)
    breakdown_where: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> ChartParams:
        """Read chart params, accepting the wire aliases.

        Example:
            >>> ChartParams.from_dict({"xAxis": "createdAt", "periodicity": "daily"}).dimension
            'createdAt'
        """
        chart_type = _enum_from_str(ChartType, params.get("type") or "LINEAR", "type")
        metric_keys = ("metric", "targetKey") if chart_type == ChartType.PIE else ("metric", "yAxis")
        return cls(
            dimension=str(_first(params, "dimension", "xAxis", "targetKey", default="")),
            breakdown=str(_first(params, "dimensionBreakdown", "groupBy", default="")),
            metric=str(_first(params, *metric_keys, default="")),
            total=_enum_from_str(
                TotalType, _first(params, "runningCalculation", "total", default="COUNT"), "total"
            ),
            chart_type=chart_type,
            periodicity=_enum_from_str(
                Periodicity, params.get("periodicity") or "NONE", "periodicity"
            ),
            dimension_where=dict(params.get("dimensionWhere") or {}),
            breakdown_where=dict(params.get("dimensionBreakdownWhere") or {}),
        )

    @property
    def by_time(self) -> bool:
        return self.chart_type == ChartType.LINEAR and self.periodicity != Periodicity.NONE

    def validate(self, model: Model) -> None:
        """Check the params against the model.

        Raises:
            ConfigurationError: If the dimension does not fit the chart
        """
        categorical = set(model.option_fields) | set(model.parent_keys)
        if self.by_time:
            if self.periodicity not in PERIOD_FORMATS:
                raise ConfigurationError(
                    f"Periodicity {self.periodicity.value} cannot be bucketed",
                    model=model.name,
                    field_name="periodicity",
                )
            if self.dimension not in model.date_fields:
                raise ConfigurationError(
                    'Field "dimension" must be a date field', model=model.name, field_name=self.dimension
                )
        else:
            if self.dimension not in categorical:
                raise ConfigurationError(
                    f'Field "dimension" must be one of ({", ".join(sorted(categorical))})',
                    model=model.name,
                    field_name=self.dimension,
                )
            if self.chart_type == ChartType.LINEAR and not self.breakdown:
                raise ConfigurationError(
                    'Field "dimensionBreakdown" is required when "periodicity" is NONE',
                    model=model.name,
                    field_name="dimensionBreakdown",
                )
        if self.total != TotalType.COUNT and not self.metric:
            raise ConfigurationError(
                f'Field "metric" is required for {self.total.value}', model=model.name, field_name="metric"
            )


def configure_grouping(query: QuerySpec, chart: ChartParams) -> None:
    """Add the filter and group_by_raw entries for a chart to ``query``."""
    chart.validate(query.model)
    x = chart.dimension
    if chart.by_time:
        key: Dict[str, Any] = {
            "period": {"$dateToString": {"format": PERIOD_FORMATS[chart.periodicity], "date": f"${x}"}}
        }
        if chart.breakdown:
            key["group"] = f"${chart.breakdown}"
        query.where(x, {"$type": "date"})
    else:
        key = {"dimension": f"${x}"}
        if chart.breakdown:
            key["group"] = f"${chart.breakdown}"
    query.group_by_raw("_id", key)
    query.group_by_raw("total", chart.total.accumulator(chart.metric))


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _shift(value: datetime, unit: str, amount: int) -> datetime:
    if unit == "months":
        return _add_months(value, amount)
    return value + timedelta(days=amount)


def _advance(value: datetime, periodicity: Periodicity) -> datetime:
    if periodicity == Periodicity.HOURLY:
        return value + timedelta(hours=1)
    if periodicity == Periodicity.WEEKLY:
        return value + timedelta(days=7)
    if periodicity == Periodicity.MONTHLY:
        return _add_months(value, 1)
    if periodicity == Periodicity.YEARLY:
        return _add_months(value, 12)
    return value + timedelta(days=1)


def bucket_label(value: datetime, periodicity: Periodicity) -> str:
    """Bucket key of one timestamp, as the document store formats it."""
    return format_date_pattern(value, PERIOD_FORMATS.get(periodicity, "%Y-%m-%d"))


def _display(value: datetime, periodicity: Periodicity) -> str:
    if periodicity == Periodicity.HOURLY:
        return f"{value:%b} {value.day}, {value:%H}:00"
    if periodicity == Periodicity.MONTHLY:
        return f"{value:%b-%Y}"
    return bucket_label(value, periodicity)


def _bucket_start(value: datetime, periodicity: Periodicity) -> datetime:
    hour = value.replace(minute=0, second=0, microsecond=0)
    if periodicity == Periodicity.HOURLY:
        return hour
    day = hour.replace(hour=0)
    if periodicity == Periodicity.WEEKLY:
        return day - timedelta(days=day.weekday())
    if periodicity == Periodicity.MONTHLY:
        return day.replace(day=1)
    if periodicity == Periodicity.YEARLY:
        return day.replace(month=1, day=1)
    return day


def period_keys(start: datetime, end: datetime, periodicity: Periodicity) -> Dict[str, str]:
    """Bucket key -> display label for every period touching [start, end].

    Example:
        >>> period_keys(datetime(2024, 1, 30, 9), datetime(2024, 2, 1), Periodicity.DAILY)
        {'2024-01-30': '2024-01-30', '2024-01-31': '2024-01-31', '2024-02-01': '2024-02-01'}
    """
    keys: Dict[str, str] = {}
    current = _bucket_start(start, periodicity)
    while current <= end:
        keys[bucket_label(current, periodicity)] = _display(current, periodicity)
        current = _advance(current, periodicity)
    return keys


def _bound(value: Any) -> Optional[datetime]:
    coerced = coerce_datetime(value) if value is not None else None
    return coerced if isinstance(coerced, datetime) else None


def date_window(
    query: QuerySpec, chart: ChartParams, where: Mapping[str, Any]
) -> Tuple[datetime, datetime]:
    """Start and end of the chart: filter bounds, else data bounds, else defaults."""
    x = chart.dimension
    start = _bound(query.backend.min(query, x))
    end = _bound(query.backend.max(query, x))

    condition = where.get(x)
    if isinstance(condition, Mapping):
        bounds = condition.get("in")
        if isinstance(bounds, (list, tuple)) and len(bounds) >= 2:
            start, end = _bound(bounds[0]) or start, _bound(bounds[1]) or end
        for key in ("greaterThan", "greaterThanOrEqualTo"):
            if key in condition:
                start = _bound(condition[key]) or start
        for key in ("lessThan", "lessThanOrEqualTo"):
            if key in condition:
                end = _bound(condition[key]) or end

    now = utc_now()
    unit, amount = DEFAULT_WINDOWS.get(chart.periodicity, ("months", 12))
    if end is None:
        end = now
    if start is None:
        start = _shift(now, unit, -amount)
    if chart.periodicity == Periodicity.HOURLY and end <= start:
        end = now
    return start, end


def _key(value: Any) -> str:
    if value is None:
        return NONE_KEY
    return str(value)


def _groups(query: QuerySpec, name: str, include_none: bool, where: Mapping[str, Any]) -> Dict[str, str]:
    """Group key -> label for the values of ``name``."""
    if not name:
        return {ALL_KEY: "All"}
    field_def = query.model.fields.get(name)
    values: Dict[str, str] = {}
    if field_def is not None and field_def.foreign_key is not None:
        related = query.backend.registry.get(field_def.foreign_key.related_model)
        if related is None:
            logger.warning(f"Chart group on {name}: related model is not registered")
        else:
            sub = query.new_instance(related)
            sub.where_all(where)
            sub.order_by(related.primary_name or PRIMARY_KEY, "ASC")
            sub.take(MAX_GROUPS)
            for row in query.backend.find(sub):
                key = _key(row.get(field_def.foreign_key.related_key, row.get(PRIMARY_KEY)))
                label = row.get(related.primary_name) if related.primary_name else None
                values[key] = str(label) if label is not None else key
    elif field_def is not None:
        if include_none:
            values[NONE_KEY] = "None"
        for option in field_def.options:
            values[_key(option.value)] = option.label
    if not values:
        return {ALL_KEY: "All"}
    return dict(list(values.items())[:MAX_GROUPS])


def _total(row: Mapping[str, Any]) -> float:
    value = row.get("total")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0


def _dataset(label: str, index: int, data: List[float], per_point: bool = False) -> Dict[str, Any]:
    colors = [PALETTE[(index + i) % len(PALETTE)] for i in range(len(data))] if per_point else [
        PALETTE[index % len(PALETTE)]
    ]
    return {"label": label, "color": colors, "backgroundColor": list(colors), "data": data}


def _pie(query: QuerySpec, chart: ChartParams, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    groups = _groups(query, chart.dimension, True, chart.dimension_where)
    keys = sorted(groups)
    values = {k: 0.0 for k in keys}
    for row in rows:
        key = _key(row.get("dimension"))
        if key in values:
            values[key] += _total(row)
    return {
        "type": ChartType.PIE.value,
        "labels": [groups[k] for k in keys],
        "datasets": [_dataset("", 0, [values[k] for k in keys], per_point=True)],
    }


def _linear(
    query: QuerySpec,
    chart: ChartParams,
    rows: List[Dict[str, Any]],
    window: Optional[Tuple[datetime, datetime]],
) -> Dict[str, Any]:
    groups = _groups(query, chart.breakdown, True, chart.breakdown_where)
    if chart.by_time and window is not None:
        periods = period_keys(window[0], window[1], chart.periodicity)
    else:
        periods = _groups(query, chart.dimension, False, chart.dimension_where)
    period_order = sorted(periods)
    group_order = sorted(groups)

    cells: Dict[Tuple[str, str], float] = {}
    for row in rows:
        period = row.get("period") if chart.by_time else _key(row.get("dimension"))
        group = _key(row.get("group")) if chart.breakdown else ALL_KEY
        cells[(str(period), group)] = cells.get((str(period), group), 0.0) + _total(row)

    datasets = []
    for index, group in enumerate(group_order):
        data = [cells.get((period, group), 0.0) for period in period_order]
        datasets.append(_dataset(groups[group], index, data))
    return {
        "type": ChartType.LINEAR.value,
        "labels": [periods[p] for p in period_order],
        "datasets": datasets,
    }


def build_graph(query: QuerySpec, params: Mapping[str, Any], where: Mapping[str, Any]) -> Dict[str, Any]:
    """Run a chart request on ``query`` and lay the result out for display.

    Args:
        query: Query specification, already carrying the caller's filter
        params: Chart params (wire aliases accepted)
        where: The caller's where map, used to bound the date window

    Returns:
        {"type", "labels", "datasets": [{"label", "color",
        "backgroundColor", "data"}]}

    Raises:
        ConfigurationError: If the params do not fit the model
    """
    chart = ChartParams.from_dict(params)
    chart.validate(query.model)
    window = date_window(query, chart, where) if chart.by_time else None

    configure_grouping(query, chart)
    query.take(0)
    rows = query.backend.find(query)
    logger.debug(
        f"Chart on {query.model.name}: {len(rows)} grouped rows",
        extra={"model": query.model.name, "periodicity": chart.periodicity.value},
    )
    if chart.chart_type == ChartType.PIE:
        return _pie(query, chart, rows)
    return _linear(query, chart, rows, window)
