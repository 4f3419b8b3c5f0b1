"""
Shared royalty arithmetic: net share, deductions, balance.
All amounts are Decimal; floats only appear when serialising.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Optional

CENT = Decimal('0.01')
ZERO = Decimal('0')
HUNDRED = Decimal('100')


@dataclass
class FinancialSnapshot:
    """A client's derived financial position. Never persisted."""
    total_gross: Decimal = ZERO
    total_net: Decimal = ZERO
    total_deductions: Decimal = ZERO
    total_withdrawn: Decimal = ZERO
    pending_amount: Decimal = ZERO
    balance: Decimal = ZERO
    share_percent: Decimal = ZERO
    label_name: str = 'Unknown Label'

    def to_dict(self) -> dict:
        return {
            'totalGross': to_float(self.total_gross),
            'totalNet': to_float(self.total_net),
            'totalDeductions': to_float(self.total_deductions),
            'totalWithdrawn': to_float(self.total_withdrawn),
            'pendingAmount': to_float(self.pending_amount),
            'balance': to_float(self.balance),
            'sharePercent': to_float(self.share_percent),
            'labelName': self.label_name,
        }


def parse_amount(val) -> Optional[Decimal]:
    """Parse an amount from numbers or currency-formatted strings. None if unusable."""
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, float):
        # repr round-trips the shortest form, so 0.1 stays 0.1
        val = repr(val)
    elif isinstance(val, str):
        val = val.strip().replace(',', '').replace('$', '').replace('₹', '')
    elif not isinstance(val, (int, Decimal)):
        return None
    try:
        parsed = Decimal(val)
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed.is_finite() else None


def to_decimal(val) -> Decimal:
    """Lenient variant of parse_amount: bad input counts as 0."""
    parsed = parse_amount(val)
    return ZERO if parsed is None else parsed


def to_float(val) -> float:
    """JSON boundary conversion, rounded to cents."""
    return float(to_decimal(val).quantize(CENT, rounding=ROUND_HALF_UP))


def calculate_net(gross, share_percent) -> Decimal:
    """Client's portion of gross, rounded to cents. share_percent is 0-100, not a fraction."""
    net = to_decimal(gross) * to_decimal(share_percent) / HUNDRED
    return net.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_deductions(gross, net) -> Decimal:
    """The label's retained portion."""
    return to_decimal(gross) - to_decimal(net)


def calculate_balance(net, withdrawn, pending) -> Decimal:
    """Spendable amount. Not clamped: may go negative."""
    return to_decimal(net) - to_decimal(withdrawn) - to_decimal(pending)


def sum_amounts(values: Iterable) -> Decimal:
    return sum((to_decimal(v) for v in values), ZERO)


def aggregate_report_stats(reports: Iterable[dict], share_percent,
                           withdrawn=ZERO, pending=ZERO) -> FinancialSnapshot:
    """Build a snapshot from report rows already in memory."""
    total_gross = sum_amounts(r.get('total_revenue') for r in reports)
    return build_snapshot(total_gross, share_percent, withdrawn, pending)


def build_snapshot(total_gross, share_percent, withdrawn=ZERO, pending=ZERO,
                   label_name: str = 'Unknown Label') -> FinancialSnapshot:
    total_gross = to_decimal(total_gross)
    share = to_decimal(share_percent)
    total_net = calculate_net(total_gross, share)
    return FinancialSnapshot(
        total_gross=total_gross,
        total_net=total_net,
        total_deductions=calculate_deductions(total_gross, total_net),
        total_withdrawn=to_decimal(withdrawn),
        pending_amount=to_decimal(pending),
        balance=calculate_balance(total_net, withdrawn, pending),
        share_percent=share,
        label_name=label_name,
    )


def format_report_row(report: dict, share_percent) -> dict:
    """Copy of a report row with gross/net/deductions attached, for report tables."""
    gross = to_decimal(report.get('total_revenue'))
    net = calculate_net(gross, share_percent)
    row = dict(report)
    row.update({
        'gross': gross,
        'net': net,
        'deductions': calculate_deductions(gross, net),
        'sharePercent': to_decimal(share_percent),
    })
    return row
