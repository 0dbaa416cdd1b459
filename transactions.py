"""Income reporting over facility transactions.

Filter resolution (timeline keyword and plan selection to concrete windows),
the aggregation of fetched records into an ``IncomeSummary``, and the small
helpers the report templates use to draw the income card, the trend
indicator, the area chart and the received/pending ring.

Everything here is pure: ``now`` is captured once by the caller and passed
to ``resolve_timeline``, so the same inputs always give the same summary.
"""
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from decimal import Decimal
import math

TIMELINES = ('today', 'yesterday', 'thisMonth', 'lastMonth', 'last7Days', 'last30Days', 'allTime')
DEFAULT_TIMELINE = 'today'
HOURLY_TIMELINES = ('today', 'yesterday')
TIMELINE_LABELS = {
    'today': 'Today',
    'yesterday': 'Yesterday',
    'thisMonth': 'This Month',
    'lastMonth': 'Last Month',
    'last7Days': 'Last 7 Days',
    'last30Days': 'Last 30 Days',
    'allTime': 'All Time',
}
EPOCH = datetime(1970, 1, 1)
RING_RADIUS = 45
ZERO = Decimal('0')


@dataclass(frozen=True)
class DateWindow:
    """Half-open interval [start, end)."""
    start: datetime
    end: datetime

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts < self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def to_dict(self):
        return {'start': self.start.isoformat(), 'end': self.end.isoformat()}


@dataclass(frozen=True)
class TimelineWindow:
    timeline: str
    current: DateWindow
    previous: DateWindow | None
    hourly: bool = False
    bounded: bool = True

    @property
    def start(self) -> datetime:
        return self.current.start

    @property
    def end(self) -> datetime:
        return self.current.end


@dataclass(frozen=True)
class TransactionRecord:
    id: int
    amount: Decimal
    type: str
    status: str
    timestamp: datetime
    member_id: int | None = None
    plan_id: int | None = None
    payer_name: str = ''
    avatar_url: str = ''
    plan_name: str = 'N/A'

    @property
    def is_income(self) -> bool:
        return self.type == 'income' and self.status == 'received'

    @property
    def is_pending(self) -> bool:
        return self.status == 'pending'

    def to_dict(self):
        return {
            'id': self.id,
            'user': self.payer_name,
            'member_id': self.member_id,
            'amount': round(float(self.amount), 2),
            'type': self.type,
            'status': self.status,
            'timestamp': self.timestamp.isoformat(),
            'display_time': self.timestamp.strftime('%d/%m/%Y, %I:%M:%S %p'),
            'avatar': self.avatar_url,
            'plan_id': self.plan_id,
            'plan': self.plan_name or 'N/A',
        }


@dataclass(frozen=True)
class EarningsPoint:
    date: str
    amount: Decimal

    def to_dict(self):
        return {'date': self.date, 'amount': round(float(self.amount), 2)}


@dataclass
class IncomeSummary:
    income: Decimal = ZERO
    previous_income: Decimal = ZERO
    total_pending_balance: Decimal = ZERO
    daily_earnings: list[EarningsPoint] = field(default_factory=list)
    percent_change: float | None = None
    trend: str = 'neutral'

    def to_dict(self):
        return {
            'income': round(float(self.income), 2),
            'previousIncome': round(float(self.previous_income), 2),
            'totalPendingBalance': round(float(self.total_pending_balance), 2),
            'percentChange': None if self.percent_change is None else round(self.percent_change, 2),
            'trend': self.trend,
            'dailyEarnings': [p.to_dict() for p in self.daily_earnings],
        }


@dataclass
class IncomeReport:
    window: TimelineWindow
    plan_id: int | None
    search: str
    summary: IncomeSummary
    transactions: list[TransactionRecord]

    def to_dict(self):
        data = {
            'ok': True,
            'timelineFilter': self.window.timeline,
            'planFilter': 'all' if self.plan_id is None else str(self.plan_id),
            'searchTerm': self.search,
            'window': self.window.current.to_dict(),
            'previousWindow': self.window.previous.to_dict() if self.window.previous else None,
        }
        data.update(self.summary.to_dict())
        data['transactions'] = [t.to_dict() for t in self.transactions]
        return data


# ---------------------------------------------------------------------------
# Filter resolution
# ---------------------------------------------------------------------------

def normalize_timeline(value: str | None) -> str:
    return value if value in TIMELINES else DEFAULT_TIMELINE


def _month_start(d: datetime) -> datetime:
    return datetime(d.year, d.month, 1)


def _previous_month_start(d: datetime) -> datetime:
    if d.month == 1:
        return datetime(d.year - 1, 12, 1)
    return datetime(d.year, d.month - 1, 1)


def resolve_timeline(timeline: str | None, now: datetime) -> TimelineWindow:
    """Map a timeline keyword to the active window and the equal-length window before it.

    Unknown keywords fall back to ``today``. ``allTime`` has no previous
    window, so period-over-period comparison is suppressed for it.
    """
    timeline = normalize_timeline(timeline)
    midnight = datetime.combine(now.date(), time.min)

    if timeline == 'allTime':
        return TimelineWindow(timeline, DateWindow(EPOCH, now), None, hourly=False, bounded=False)

    if timeline == 'today':
        start, end = midnight, now
    elif timeline == 'yesterday':
        start, end = midnight - timedelta(days=1), midnight
    elif timeline == 'thisMonth':
        start, end = _month_start(now), now
    elif timeline == 'lastMonth':
        start, end = _previous_month_start(now), _month_start(now)
    elif timeline == 'last7Days':
        start, end = now - timedelta(days=7), now
    else:  # last30Days
        start, end = now - timedelta(days=30), now

    span = end - start
    return TimelineWindow(
        timeline,
        DateWindow(start, end),
        DateWindow(start - span, start),
        hourly=timeline in HOURLY_TIMELINES,
    )


def resolve_plan_filter(value) -> int | None:
    """``"all"`` (or nothing usable) means no plan predicate."""
    if value in (None, '', 'all'):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def matches_plan(record: TransactionRecord, plan_id: int | None) -> bool:
    """In-memory form of the store's plan predicate; ``None`` matches every record."""
    return plan_id is None or record.plan_id == plan_id


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def _total(amounts) -> Decimal:
    return sum(amounts, ZERO)


def _bucket_start(ts: datetime, hourly: bool) -> datetime:
    if hourly:
        return ts.replace(minute=0, second=0, microsecond=0)
    return datetime.combine(ts.date(), time.min)


def _bucket_label(bucket: datetime, hourly: bool) -> str:
    return bucket.isoformat() if hourly else bucket.date().isoformat()


def daily_earnings(records, window: TimelineWindow) -> list[EarningsPoint]:
    """Income per day (per hour for today/yesterday), ascending and zero-filled.

    Unbounded windows start at the first bucket holding income instead of
    the epoch.
    """
    current = window.current
    if current.end <= current.start:
        return []
    hourly = window.hourly
    totals: dict[datetime, Decimal] = {}
    for r in records:
        if r.is_income and current.contains(r.timestamp):
            bucket = _bucket_start(r.timestamp, hourly)
            totals[bucket] = totals.get(bucket, ZERO) + r.amount

    if window.bounded:
        cursor = _bucket_start(current.start, hourly)
    elif totals:
        cursor = min(totals)
    else:
        return []
    last = _bucket_start(current.end - timedelta(microseconds=1), hourly)
    step = timedelta(hours=1) if hourly else timedelta(days=1)

    points = []
    while cursor <= last:
        points.append(EarningsPoint(_bucket_label(cursor, hourly), totals.get(cursor, ZERO)))
        cursor += step
    return points


def trend_direction(points: list[EarningsPoint]) -> str:
    if len(points) < 2:
        return 'neutral'
    diff = points[-1].amount - points[0].amount
    if diff > 0:
        return 'upward'
    if diff < 0:
        return 'downward'
    return 'neutral'


def percent_change(income: Decimal, previous_income: Decimal) -> float | None:
    """None when there is nothing to compare against."""
    if not previous_income:
        return None
    return float((income - previous_income) / previous_income * 100)


def summarize_income(active, previous, window: TimelineWindow) -> IncomeSummary:
    current = window.current
    in_window = [r for r in active if current.contains(r.timestamp)]
    income = _total(r.amount for r in in_window if r.is_income)
    pending = _total(r.amount for r in in_window if r.is_pending)

    if window.previous is None:
        previous_income = ZERO
        change = None
    else:
        previous_income = _total(
            r.amount for r in previous if r.is_income and window.previous.contains(r.timestamp)
        )
        change = percent_change(income, previous_income)

    points = daily_earnings(in_window, window)
    return IncomeSummary(
        income=income,
        previous_income=previous_income,
        total_pending_balance=pending,
        daily_earnings=points,
        percent_change=change,
        trend=trend_direction(points),
    )


def build_income_report(store, facility_id: int, timeline: str | None, plan=None,
                        now: datetime | None = None, search: str | None = None) -> IncomeReport:
    """Resolve filters, fetch both windows through ``store`` and aggregate.

    ``store`` is anything with ``fetch_transactions(facility_id, window, plan_id=, search=)``;
    its ``FetchFailure`` propagates to the caller untouched.
    """
    window = resolve_timeline(timeline, now or datetime.now())
    plan_id = resolve_plan_filter(plan)
    search = (search or '').strip()
    active = store.fetch_transactions(facility_id, window.current, plan_id=plan_id, search=search or None)
    previous = []
    if window.previous is not None:
        previous = store.fetch_transactions(facility_id, window.previous, plan_id=plan_id, search=search or None)
    summary = summarize_income(active, previous, window)
    listed = sorted(
        (r for r in active if window.current.contains(r.timestamp)),
        key=lambda r: (r.timestamp, r.id),
        reverse=True,
    )
    return IncomeReport(window=window, plan_id=plan_id, search=search, summary=summary, transactions=listed)


@dataclass
class DashboardReport:
    total_received: Decimal
    pending_payment: Decimal
    today_income: Decimal
    yesterday_income: Decimal
    percent_change: float | None
    earning_summary: list[EarningsPoint]
    recent: list[TransactionRecord]

    @property
    def trend(self) -> str:
        return trend_direction(self.earning_summary)

    def to_dict(self):
        ring = ring_chart(self.total_received, self.pending_payment)
        return {
            'ok': True,
            'metrics': {
                'totalReceived': round(float(self.total_received), 2),
                'pendingPayment': round(float(self.pending_payment), 2),
            },
            'transactionStats': {
                'received': round(ring['received_fraction'] * 100, 2),
                'pending': round(ring['pending_fraction'] * 100, 2),
            },
            'income': {
                'today': round(float(self.today_income), 2),
                'yesterday': round(float(self.yesterday_income), 2),
                'percentageChange': None if self.percent_change is None else round(self.percent_change, 2),
            },
            'trend': self.trend,
            'earningSummary': [p.to_dict() for p in self.earning_summary],
            'transactions': [t.to_dict() for t in self.recent],
        }


def build_dashboard(store, facility_id: int, now: datetime | None = None, recent: int = 3) -> DashboardReport:
    """Facility overview: all-time totals, today vs yesterday and the last seven days.

    One all-time fetch; every figure is reduced from that record set.
    """
    now = now or datetime.now()
    all_time = resolve_timeline('allTime', now)
    records = store.fetch_transactions(facility_id, all_time.current)
    overall = summarize_income(records, [], all_time)

    today = summarize_income(records, [], resolve_timeline('today', now)).income
    yesterday = summarize_income(records, [], resolve_timeline('yesterday', now)).income

    midnight = datetime.combine(now.date(), time.min)
    week = TimelineWindow('last7Days', DateWindow(midnight - timedelta(days=6), now), None)
    latest = sorted(
        (r for r in records if all_time.current.contains(r.timestamp)),
        key=lambda r: (r.timestamp, r.id),
        reverse=True,
    )[:recent]
    return DashboardReport(
        total_received=overall.income,
        pending_payment=overall.total_pending_balance,
        today_income=today,
        yesterday_income=yesterday,
        percent_change=percent_change(today, yesterday),
        earning_summary=daily_earnings(records, week),
        recent=latest,
    )


# ---------------------------------------------------------------------------
# Presentation helpers
# ---------------------------------------------------------------------------

TREND_LABELS = {
    'upward': {'icon': '↗', 'label': 'Upward Trend', 'tone': 'success'},
    'downward': {'icon': '↘', 'label': 'Downward Trend', 'tone': 'danger'},
    'neutral': {'icon': '→', 'label': 'No Trend', 'tone': 'secondary'},
}


def trend_label(direction: str) -> dict:
    return TREND_LABELS.get(direction, TREND_LABELS['neutral'])


def change_badge(percent: float | None) -> dict:
    if percent is None:
        return {'label': 'n/a', 'direction': 'neutral', 'tone': 'secondary'}
    if percent < 0:
        return {'label': f"↓ {percent:.1f}%", 'direction': 'down', 'tone': 'danger'}
    return {'label': f"↑ {percent:.1f}%", 'direction': 'up', 'tone': 'success'}


def format_currency(amount, symbol: str = '₹') -> str:
    value = Decimal(str(amount or 0))
    if value < 0:
        return f"-{symbol}{-value:,.2f}"
    return f"{symbol}{value:,.2f}"


def format_tick(date_str: str, timeline: str) -> str:
    dt = datetime.fromisoformat(date_str)
    if timeline in HOURLY_TIMELINES:
        return dt.strftime('%H:%M')
    return dt.strftime('%a')


def ring_chart(income, pending) -> dict:
    """Received vs pending arcs for the SVG ring. Empty ring when both are zero."""
    circumference = 2 * math.pi * RING_RADIUS
    income = Decimal(str(income or 0))
    pending = Decimal(str(pending or 0))
    total = income + pending
    if total == 0:
        return {
            'empty': True,
            'received_fraction': 0.0,
            'pending_fraction': 0.0,
            'received_dash': 0.0,
            'pending_dash': 0.0,
            'circumference': circumference,
        }
    received_fraction = float(income / total)
    pending_fraction = float(pending / total)
    return {
        'empty': False,
        'received_fraction': received_fraction,
        'pending_fraction': pending_fraction,
        'received_dash': received_fraction * circumference,
        'pending_dash': pending_fraction * circumference,
        'circumference': circumference,
    }


def area_chart(points: list[EarningsPoint], timeline: str, width: int = 600, height: int = 200) -> dict:
    """SVG coordinates for the earnings area chart.

    The y scale always spans zero, so negative days sit below the baseline
    and every point stays inside ``0..height``.
    """
    if not points:
        return {'line': '', 'area': '', 'ticks': [], 'max': 0.0, 'min': 0.0, 'baseline': float(height)}
    amounts = [float(p.amount) for p in points]
    top = max(max(amounts), 0.0)
    bottom = min(min(amounts), 0.0)
    span = (top - bottom) or 1.0
    step = width / (len(points) - 1) if len(points) > 1 else 0

    def y_of(value: float) -> float:
        return round(height - ((value - bottom) / span) * height, 2)

    coords = []
    ticks = []
    for i, (p, amount) in enumerate(zip(points, amounts)):
        x = round(i * step, 2)
        coords.append(f"{x},{y_of(amount)}")
        ticks.append({'x': x, 'label': format_tick(p.date, timeline)})
    line = ' '.join(coords)
    baseline = y_of(0.0)
    area = f"0,{baseline} {line} {coords[-1].split(',')[0]},{baseline}"
    return {'line': line, 'area': area, 'ticks': ticks, 'max': top, 'min': bottom, 'baseline': baseline}
