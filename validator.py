"""
Validation & Issue Flagging for report ingestion and ledger writes.
Errors block the write; warnings are logged and carried on the result.
Checks: required fields, report period, gross total, detail rows, duplicate rows.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

import pandas as pd

from calculations import CENT, ZERO, parse_amount
from errors import ValidationError

log = logging.getLogger('royalty')

# Description written on every ledger row expanded from an uploaded report.
# Report deletion removes ledger rows by this marker + the report period.
REPORT_MARKER = 'Monthly Report'
DEFAULT_SOURCE = 'Excel Upload'

# Largest value the amount columns hold
MAX_AMOUNT = Decimal('999999999999.99')

CURRENCIES = ('USD', 'INR')
WITHDRAWAL_DECISIONS = ('approved', 'rejected')


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class ValidationIssue:
    """A single validation issue found during checks."""
    check: str              # Check name (e.g. 'required_fields', 'duplicate_rows')
    severity: str           # 'error' or 'warning'
    message: str            # Human-readable description
    affected_rows: List[int] = field(default_factory=list)
    count: int = 0

    def to_dict(self) -> dict:
        return {'check': self.check, 'severity': self.severity, 'message': self.message,
                'affected_rows': self.affected_rows, 'count': self.count}


@dataclass
class ValidationResult:
    """Combined result of all validation checks."""
    issues: List[ValidationIssue] = field(default_factory=list)
    total_rows: int = 0
    kept_rows: int = 0

    @property
    def error_count(self) -> int:
        return sum(1 for i in self.issues if i.severity == 'error')

    @property
    def warning_count(self) -> int:
        return sum(1 for i in self.issues if i.severity == 'warning')

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0

    def raise_for_errors(self, what: str):
        if self.has_errors:
            messages = '; '.join(i.message for i in self.issues if i.severity == 'error')
            raise ValidationError(f"Invalid {what}: {messages}", issues=self.issues)


@dataclass
class DetailRow:
    amount: Decimal
    date: date
    source: str = DEFAULT_SOURCE

    def to_json(self) -> dict:
        return {'amount': str(self.amount), 'date': self.date.isoformat(),
                'source': self.source}

    @classmethod
    def from_json(cls, data: dict) -> 'DetailRow':
        return cls(amount=Decimal(data['amount']), date=date.fromisoformat(data['date']),
                   source=data.get('source') or DEFAULT_SOURCE)


@dataclass
class ReportInput:
    """A validated upload: one report plus its ordered detail rows."""
    client_id: int
    start_date: date
    end_date: date
    total_revenue: Decimal
    file_url: str
    filename: str
    rows: List[DetailRow] = field(default_factory=list)
    validation: ValidationResult = field(default_factory=ValidationResult)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def parse_date(val) -> Optional[date]:
    """Parse a date from date objects or date strings. None if unparseable."""
    if val is None or (isinstance(val, str) and not val.strip()):
        return None
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val
    ts = pd.to_datetime(val, errors='coerce')
    if ts is None or pd.isna(ts):
        return None
    return ts.date()


def money_problem(amount: Decimal, cents: bool = True) -> Optional[str]:
    """Why an amount does not fit the NUMERIC(14, 2) columns, or None."""
    if abs(amount) > MAX_AMOUNT:
        return f'exceeds {MAX_AMOUNT}'
    if cents and amount != amount.quantize(CENT):
        return 'has more than two decimal places'
    return None


def _parse_client_id(val) -> Optional[int]:
    if val is None or isinstance(val, bool):
        return None
    try:
        return int(str(val).strip())
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Check 1: Required report fields
# ---------------------------------------------------------------------------

REQUIRED_REPORT_FIELDS = ('client_id', 'start_date', 'end_date', 'total_revenue',
                          'file_url', 'filename')


def check_required_fields(metadata: dict) -> List[ValidationIssue]:
    missing = [f for f in REQUIRED_REPORT_FIELDS
               if metadata.get(f) is None or str(metadata.get(f)).strip() == '']
    if not missing:
        return []
    return [ValidationIssue(
        check='required_fields',
        severity='error',
        message=f'Missing required field(s): {", ".join(missing)}',
        count=len(missing),
    )]


# ---------------------------------------------------------------------------
# Check 2: Report period
# ---------------------------------------------------------------------------

def check_period(start: Optional[date], end: Optional[date],
                 raw_start=None, raw_end=None) -> List[ValidationIssue]:
    issues = []
    if start is None and raw_start not in (None, ''):
        issues.append(ValidationIssue('period', 'error', f'Unparseable start_date: {raw_start!r}'))
    if end is None and raw_end not in (None, ''):
        issues.append(ValidationIssue('period', 'error', f'Unparseable end_date: {raw_end!r}'))
    if start and end and end < start:
        issues.append(ValidationIssue(
            'period', 'error', f'end_date {end.isoformat()} is before start_date {start.isoformat()}'))
    return issues


# ---------------------------------------------------------------------------
# Check 3: Gross total
# ---------------------------------------------------------------------------

def check_total_revenue(raw) -> List[ValidationIssue]:
    if raw is None or str(raw).strip() == '':
        return []  # reported by required_fields
    total = parse_amount(raw)
    if total is None:
        return [ValidationIssue('total_revenue', 'error', f'total_revenue is not a number: {raw!r}')]
    if total < ZERO:
        return [ValidationIssue('total_revenue', 'error', 'total_revenue must be >= 0')]
    problem = money_problem(total)
    if problem:
        return [ValidationIssue('total_revenue', 'error', f'total_revenue {problem}')]
    return []


# ---------------------------------------------------------------------------
# Check 4: Detail rows
# ---------------------------------------------------------------------------

def check_detail_rows(raw_rows: List[dict]):
    """Normalise detail rows. Returns (kept rows, issues).

    Rows missing amount or date are dropped with a warning. Rows whose amount
    or date is present but unparseable are errors.
    """
    kept: List[DetailRow] = []
    incomplete, invalid = [], []

    for idx, raw in enumerate(raw_rows or []):
        if not isinstance(raw, dict):
            invalid.append(idx)
            continue
        raw_amount, raw_date = raw.get('amount'), raw.get('date')
        if raw_amount in (None, '') or raw_date in (None, ''):
            incomplete.append(idx)
            continue
        amount, row_date = parse_amount(raw_amount), parse_date(raw_date)
        if amount is None or row_date is None or money_problem(amount, cents=False):
            invalid.append(idx)
            continue
        kept.append(DetailRow(
            amount=amount,
            date=row_date,
            source=str(raw.get('source') or DEFAULT_SOURCE),
        ))

    issues = []
    if incomplete:
        issues.append(ValidationIssue(
            check='incomplete_rows',
            severity='warning',
            message=f'{len(incomplete)} detail row(s) without amount or date were skipped',
            affected_rows=incomplete[:100],
            count=len(incomplete),
        ))
    if invalid:
        issues.append(ValidationIssue(
            check='invalid_rows',
            severity='error',
            message=f'{len(invalid)} detail row(s) have an unparseable amount or date',
            affected_rows=invalid[:100],
            count=len(invalid),
        ))
    return kept, issues


# ---------------------------------------------------------------------------
# Check 5: Duplicate data rows
# ---------------------------------------------------------------------------

def check_duplicate_rows(rows: List[DetailRow]) -> List[ValidationIssue]:
    """Flag fully identical detail rows via df.duplicated()."""
    if not rows:
        return []
    detail_df = pd.DataFrame([r.to_json() for r in rows])
    dupes = detail_df.duplicated(keep='first')
    dupe_count = int(dupes.sum())
    if dupe_count == 0:
        return []
    return [ValidationIssue(
        check='duplicate_rows',
        severity='warning',
        message=f'{dupe_count} duplicate detail row(s) found',
        affected_rows=detail_df.index[dupes].tolist()[:100],
        count=dupe_count,
    )]


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def validate_report_input(metadata: dict, raw_rows: Optional[List[dict]] = None) -> ReportInput:
    """Run all report checks. Raises ValidationError on any error-severity issue."""
    result = ValidationResult(total_rows=len(raw_rows or []))
    result.issues.extend(check_required_fields(metadata))

    client_id = _parse_client_id(metadata.get('client_id'))
    if client_id is None and metadata.get('client_id') not in (None, ''):
        result.issues.append(ValidationIssue('client_id', 'error',
                                             f'client_id is not an id: {metadata.get("client_id")!r}'))

    start, end = parse_date(metadata.get('start_date')), parse_date(metadata.get('end_date'))
    result.issues.extend(check_period(start, end, metadata.get('start_date'), metadata.get('end_date')))
    result.issues.extend(check_total_revenue(metadata.get('total_revenue')))

    rows, row_issues = check_detail_rows(raw_rows or [])
    result.issues.extend(row_issues)
    result.issues.extend(check_duplicate_rows(rows))
    result.kept_rows = len(rows)

    result.raise_for_errors('report')
    for issue in result.issues:
        log.warning("Report upload for client %s: %s", client_id, issue.message)

    return ReportInput(
        client_id=client_id,
        start_date=start,
        end_date=end,
        total_revenue=parse_amount(metadata['total_revenue']),
        file_url=str(metadata['file_url']),
        filename=str(metadata['filename']),
        rows=rows,
        validation=result,
    )


def validate_report_patch(patch: dict) -> dict:
    """Validate an administrator's report correction. Returns store column -> value."""
    result = ValidationResult()
    fields = {}

    if 'client_id' in patch:
        client_id = _parse_client_id(patch['client_id'])
        if client_id is None:
            result.issues.append(ValidationIssue('client_id', 'error',
                                                 f'client_id is not an id: {patch["client_id"]!r}'))
        fields['user_id'] = client_id
    for key in ('start_date', 'end_date'):
        if key in patch:
            parsed = parse_date(patch[key])
            if parsed is None:
                result.issues.append(ValidationIssue('period', 'error',
                                                     f'Unparseable {key}: {patch[key]!r}'))
            fields[key] = parsed
    if 'total_revenue' in patch:
        if patch['total_revenue'] is None or str(patch['total_revenue']).strip() == '':
            result.issues.append(ValidationIssue('total_revenue', 'error', 'total_revenue is empty'))
        else:
            issues = check_total_revenue(patch['total_revenue'])
            result.issues.extend(issues)
            if not issues:
                fields['total_revenue'] = parse_amount(patch['total_revenue'])

    result.raise_for_errors('report update')
    return fields


def validate_royalty_entry(entry: dict) -> dict:
    """Validate a manual ledger entry. The report marker is reserved."""
    result = ValidationResult(total_rows=1)
    client_id = _parse_client_id(entry.get('user_id', entry.get('client_id')))
    amount = parse_amount(entry.get('amount'))
    entry_date = parse_date(entry.get('date'))
    description = entry.get('description') or ''

    if client_id is None:
        result.issues.append(ValidationIssue('required_fields', 'error', 'user_id is required'))
    if amount is None:
        result.issues.append(ValidationIssue('amount', 'error',
                                             f'amount is not a number: {entry.get("amount")!r}'))
    elif money_problem(amount):
        result.issues.append(ValidationIssue('amount', 'error',
                                             f'amount {amount} {money_problem(amount)}'))
    if entry_date is None:
        result.issues.append(ValidationIssue('date', 'error',
                                             f'date is missing or unparseable: {entry.get("date")!r}'))
    if description == REPORT_MARKER:
        result.issues.append(ValidationIssue(
            'description', 'error', f'"{REPORT_MARKER}" is reserved for report uploads'))

    result.raise_for_errors('royalty entry')
    return {
        'user_id': client_id,
        'amount': amount,
        'date': entry_date,
        'description': description or None,
        'source': entry.get('source') or None,
    }


def validate_withdrawal_amount(raw) -> Decimal:
    amount = parse_amount(raw)
    if amount is None or amount <= ZERO:
        raise ValidationError('Invalid withdrawal amount')
    problem = money_problem(amount)
    if problem:
        raise ValidationError(f'Invalid withdrawal amount: {amount} {problem}')
    return amount


def validate_withdrawal_decision(status) -> str:
    if status not in WITHDRAWAL_DECISIONS:
        raise ValidationError(
            f'Withdrawal status must be one of {", ".join(WITHDRAWAL_DECISIONS)}, got {status!r}')
    return status


def validate_currency(currency) -> str:
    if currency not in CURRENCIES:
        raise ValidationError(f'Currency must be one of {", ".join(CURRENCIES)}, got {currency!r}')
    return currency
