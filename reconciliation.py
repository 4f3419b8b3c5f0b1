"""
Reconciliation engine: a client's financial snapshot and chart series.

Reads are fresh on every call (nothing is cached). Store failures on these
read paths degrade to zeroed results so the dashboard always renders.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

import pandas as pd

from calculations import ZERO, FinancialSnapshot, build_snapshot, calculate_net, to_decimal, to_float
from errors import NotFound, StoreUnavailable, ValidationError

log = logging.getLogger('royalty')

# Number of month buckets per chart view
VIEW_WINDOWS = {'monthly': 4, 'yearly': 12}

ADMIN_ROLES = ('Owner', 'Employee', 'admin')
CLIENT_ROLE = 'Label Admin'


def is_admin_role(role: Optional[str]) -> bool:
    return role in ADMIN_ROLES


# ---------------------------------------------------------------------------
# Label / share resolution
# ---------------------------------------------------------------------------

class LabelMatch(Enum):
    BY_ID = 'by_id'
    BY_EMAIL = 'by_email'
    UNRESOLVED = 'unresolved'


@dataclass
class LabelResolution:
    """Outcome of looking up a client's label. share is 0 when unresolved."""
    match: LabelMatch
    label: Optional[dict] = None

    @property
    def share_percent(self) -> Decimal:
        if self.label is None:
            return ZERO
        return to_decimal(self.label.get('revenue_share'))

    @property
    def label_name(self) -> str:
        if self.label is None or not self.label.get('name'):
            return 'Unknown Label'
        return self.label['name']


def resolve_label(store, client_id, email: Optional[str] = None) -> LabelResolution:
    """Match a label by owner id first, then by owner email (case-insensitive)."""
    label = store.find_label_by_owner_id(str(client_id))
    if label is not None:
        return LabelResolution(LabelMatch.BY_ID, label)
    if email:
        label = store.find_label_by_owner_email(email)
        if label is not None:
            return LabelResolution(LabelMatch.BY_EMAIL, label)
    return LabelResolution(LabelMatch.UNRESOLVED)


def _resolve_client_label(store, client_id) -> LabelResolution:
    client = store.get_client(client_id)
    email = client.get('email') if client else None
    return resolve_label(store, client_id, email)


def get_share_percent(store, client_id) -> Decimal:
    """Client's revenue share; 0 when unresolved or the store is down."""
    try:
        return _resolve_client_label(store, client_id).share_percent
    except StoreUnavailable as e:
        log.warning("Share lookup for client %s degraded to 0: %s", client_id, e)
        return ZERO


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

def compute_snapshot(store, client_id) -> FinancialSnapshot:
    """Snapshot with store errors propagated. The four reads run concurrently."""
    with ThreadPoolExecutor(max_workers=4) as pool:
        f_label = pool.submit(_resolve_client_label, store, client_id)
        f_gross = pool.submit(store.sum_report_gross, client_id)
        f_withdrawn = pool.submit(store.sum_withdrawals, client_id, 'approved')
        f_pending = pool.submit(store.sum_withdrawals, client_id, 'pending')

        resolution = f_label.result()
        return build_snapshot(
            total_gross=f_gross.result(),
            share_percent=resolution.share_percent,
            withdrawn=f_withdrawn.result(),
            pending=f_pending.result(),
            label_name=resolution.label_name,
        )


def get_snapshot(store, client_id, strict: bool = False) -> FinancialSnapshot:
    """A client's financial snapshot.

    With strict=False (dashboard reads) a store failure yields the zero
    snapshot. strict=True lets StoreUnavailable propagate.
    """
    try:
        return compute_snapshot(store, client_id)
    except StoreUnavailable as e:
        if strict:
            raise
        log.warning("Snapshot for client %s degraded to zero: %s", client_id, e)
        return FinancialSnapshot()


# ---------------------------------------------------------------------------
# Chart series
# ---------------------------------------------------------------------------

@dataclass
class ChartPoint:
    period_label: str       # e.g. 'Oct 26'
    month: str              # 'YYYY-MM'
    revenue: Decimal = ZERO

    def to_dict(self) -> dict:
        # wire key for the period label is 'date'
        return {'date': self.period_label, 'month': self.month,
                'revenue': to_float(self.revenue)}


def build_chart_series(monthly_totals, view: str = 'monthly',
                       now: Optional[datetime] = None) -> List[ChartPoint]:
    """Gap-filled, ascending month buckets ending at max(now, latest real month).

    monthly_totals: iterable of (YYYY-MM, gross) pairs.
    """
    if view not in VIEW_WINDOWS:
        raise ValidationError(f"Unknown chart view: {view!r}")

    real: Dict[pd.Period, Decimal] = {}
    for month, total in monthly_totals:
        period = pd.Period(str(month)[:7], freq='M')
        real[period] = real.get(period, ZERO) + to_decimal(total)

    anchor = pd.Period(now or datetime.now(), freq='M')
    if real:
        anchor = max(anchor, max(real))

    buckets = pd.period_range(end=anchor, periods=VIEW_WINDOWS[view], freq='M')
    return [
        ChartPoint(period_label=p.strftime('%b %y'), month=p.strftime('%Y-%m'),
                   revenue=real.get(p, ZERO))
        for p in buckets
    ]


def get_chart_series(store, client_id, view: str = 'monthly',
                     now: Optional[datetime] = None) -> List[ChartPoint]:
    """Gross revenue per month from the client's reports, gap-filled for charting."""
    if view not in VIEW_WINDOWS:
        raise ValidationError(f"Unknown chart view: {view!r}")
    try:
        monthly = store.monthly_report_gross(client_id)
    except StoreUnavailable as e:
        log.warning("Chart series for client %s degraded to zeros: %s", client_id, e)
        monthly = []
    return build_chart_series(monthly, view, now)


def scale_series(points: List[ChartPoint], share_percent) -> List[ChartPoint]:
    """Gross series -> net series for the given share."""
    return [ChartPoint(p.period_label, p.month, calculate_net(p.revenue, share_percent))
            for p in points]


# ---------------------------------------------------------------------------
# Profile & admin overview
# ---------------------------------------------------------------------------

def get_client_profile(store, client_id) -> dict:
    client = store.get_client(client_id)
    if client is None:
        raise NotFound(f"Client {client_id} not found")
    resolution = resolve_label(store, client_id, client.get('email'))
    return {
        'id': client['id'],
        'email': client.get('email'),
        'name': client.get('name'),
        'role': client.get('role'),
        'currency': client.get('currency') or 'USD',
        'canManageArtists': is_admin_role(client.get('role')),
        'revenueShare': to_float(resolution.share_percent),
        'labelMatch': resolution.match.value,
    }


@dataclass
class AdminOverview:
    royalties: List[dict] = field(default_factory=list)
    withdrawals: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'royalties': [{'month': r['month'], 'total': to_float(r['total'])}
                          for r in self.royalties],
            'withdrawals': [{'month': w['month'], 'total': to_float(w['total'])}
                            for w in self.withdrawals],
        }


def get_admin_overview(store, months: int = 6) -> AdminOverview:
    """Latest months of ledger totals and approved withdrawals, newest first."""
    try:
        return AdminOverview(
            royalties=store.monthly_royalty_totals(limit=months),
            withdrawals=store.monthly_withdrawal_totals(status='approved', limit=months),
        )
    except StoreUnavailable as e:
        log.warning("Admin overview degraded to empty: %s", e)
        return AdminOverview()
