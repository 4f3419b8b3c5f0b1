"""
Write operations: report ingestion, report corrections and deletion, manual
ledger entries, withdrawals.

Ingestion is a two-phase write with no cross-table transaction:
  1. insert the report row with ledger_expanded = false and the detail rows
     parked in pending_rows
  2. batch-insert the ledger rows (description = REPORT_MARKER), then flag the
     report as expanded
If phase 2 fails the report stays and can be replayed with
retry_ledger_expansion() / reconcile_unexpanded_reports(). Expanded ledger
rows carry the report id, and a replay first clears rows left by an earlier
attempt.
"""

import logging
from datetime import date
from typing import List

import notifications
import storage
from errors import (
    InsufficientBalance, NotFound, PartialIngestionFailure, StoreUnavailable, ValidationError,
    WithdrawalStateError,
)
from reconciliation import get_snapshot
from validator import (
    REPORT_MARKER, DetailRow, ReportInput, validate_currency, validate_report_patch,
    validate_royalty_entry, validate_withdrawal_amount, validate_withdrawal_decision,
)

log = logging.getLogger('royalty')


# ---------------------------------------------------------------------------
# Report ingestion
# ---------------------------------------------------------------------------

def _ledger_rows(report_id, client_id, rows: List[DetailRow]) -> List[dict]:
    return [{
        'user_id': client_id,
        'amount': r.amount,
        'date': r.date,
        'description': REPORT_MARKER,
        'source': r.source,
        'report_id': report_id,
    } for r in rows]


def _expand(store, report_id, client_id, rows: List[DetailRow], replay: bool = False) -> int:
    if replay:
        cleared = store.delete_report_expansion(report_id)
        if cleared:
            log.warning("Report %s: cleared %d ledger row(s) from an earlier attempt",
                        report_id, cleared)
    count = store.insert_royalties(_ledger_rows(report_id, client_id, rows)) if rows else 0
    store.mark_report_expanded(report_id, True)
    return count


def _require_client(store, client_id) -> None:
    if store.get_client(client_id) is None:
        raise NotFound(f"Client {client_id} not found")


def record_report(store, report: ReportInput) -> int:
    """Write one report row and expand its detail rows into the ledger. Returns report id.

    Raises PartialIngestionFailure (carrying the id) when the report row was
    written but the ledger expansion was not.
    """
    _require_client(store, report.client_id)
    report_id = store.insert_report({
        'user_id': report.client_id,
        'start_date': report.start_date,
        'end_date': report.end_date,
        'total_revenue': report.total_revenue,
        'file_url': report.file_url,
        'filename': report.filename,
        'pending_rows': [r.to_json() for r in report.rows],
    })
    log.info("Report %s recorded for client %s (%s to %s, gross %s)",
             report_id, report.client_id, report.start_date, report.end_date,
             report.total_revenue)

    notifications.notify_revenue_added(store, report.client_id, report.start_date)

    try:
        count = _expand(store, report_id, report.client_id, report.rows)
    except StoreUnavailable as e:
        log.error("Report %s: ledger expansion failed, left unexpanded: %s", report_id, e)
        raise PartialIngestionFailure(report_id, e) from e

    log.info("Report %s: %d ledger row(s) written", report_id, count)
    return report_id


def retry_ledger_expansion(store, report_id) -> int:
    """Replay phase 2 for a report left unexpanded. Returns rows written (0 if already done)."""
    report = store.get_report(report_id)
    if report is None:
        raise NotFound(f"Report {report_id} not found")
    if report.get('ledger_expanded'):
        return 0
    rows = [DetailRow.from_json(r) for r in report.get('pending_rows') or []]
    count = _expand(store, report_id, report['user_id'], rows, replay=True)
    log.info("Report %s: ledger expansion replayed, %d row(s) written", report_id, count)
    return count


def reconcile_unexpanded_reports(store) -> dict:
    """Retry every unexpanded report. Returns {report_id: rows written or error message}."""
    outcome = {}
    for report in store.list_unexpanded_reports():
        try:
            outcome[report['id']] = retry_ledger_expansion(store, report['id'])
        except StoreUnavailable as e:
            log.error("Report %s: expansion retry failed: %s", report['id'], e)
            outcome[report['id']] = str(e)
    return outcome


# ---------------------------------------------------------------------------
# Report corrections & deletion
# ---------------------------------------------------------------------------

def update_report(store, report_id, patch: dict) -> None:
    """Apply an administrator's correction to client, period or gross total."""
    current = store.get_report(report_id)
    if current is None:
        raise NotFound(f"Report {report_id} not found")

    fields = validate_report_patch(patch)
    if 'user_id' in fields:
        _require_client(store, fields['user_id'])
    start = fields.get('start_date', current['start_date'])
    end = fields.get('end_date', current['end_date'])
    if start > end:
        raise ValidationError(f"end_date {end} is before start_date {start}")

    if fields and not store.update_report(report_id, fields):
        raise NotFound(f"Report {report_id} not found")
    log.info("Report %s updated: %s", report_id, sorted(fields))


def delete_report(store, report_id, archive=storage) -> None:
    """Delete a report, its derived ledger rows and (best-effort) its archived file."""
    report = store.get_report(report_id)
    if report is None:
        raise NotFound(f"Report {report_id} not found")

    removed = store.delete_report_royalties(report['user_id'], report['start_date'],
                                            report['end_date'], REPORT_MARKER)

    if report.get('file_url'):
        if not archive.delete_blob(report['file_url']):
            log.warning("Report %s: archived file %s not deleted", report_id, report['file_url'])

    store.delete_report(report_id)
    log.info("Report %s deleted with %d derived ledger row(s)", report_id, removed)


# ---------------------------------------------------------------------------
# Manual ledger entries
# ---------------------------------------------------------------------------

def add_royalty(store, entry: dict) -> int:
    row = validate_royalty_entry(entry)
    _require_client(store, row['user_id'])
    store.insert_royalties([row])
    log.info("Manual royalty of %s added for client %s", row['amount'], row['user_id'])
    return 1


def add_royalties_bulk(store, entries: List[dict]) -> int:
    """Validate every entry first, then write them as one batch."""
    rows = [validate_royalty_entry(e) for e in entries]
    for client_id in sorted({r['user_id'] for r in rows}):
        _require_client(store, client_id)
    count = store.insert_royalties(rows)
    log.info("Bulk royalty import: %d row(s)", count)
    return count


def delete_royalty(store, royalty_id) -> None:
    if not store.delete_royalty(royalty_id):
        raise NotFound(f"Royalty entry {royalty_id} not found")


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------

def request_withdrawal(store, client_id, amount) -> int:
    """Create a pending withdrawal. Returns its id.

    The balance check uses a snapshot taken now and is advisory: nothing
    stops two concurrent requests from both passing it.
    """
    amount = validate_withdrawal_amount(amount)
    _require_client(store, client_id)
    snapshot = get_snapshot(store, client_id, strict=True)
    if amount > snapshot.balance:
        raise InsufficientBalance(amount, snapshot.balance)

    withdrawal_id = store.insert_withdrawal(client_id, amount)
    log.info("Withdrawal %s requested by client %s: %s", withdrawal_id, client_id, amount)
    return withdrawal_id


def set_withdrawal_status(store, withdrawal_id, status: str) -> None:
    """pending -> approved | rejected, then notify the client.

    The store update only applies while the row is still pending, so of two
    concurrent decisions exactly one wins.
    """
    status = validate_withdrawal_decision(status)
    withdrawal = store.get_withdrawal(withdrawal_id)
    if withdrawal is None:
        raise NotFound(f"Withdrawal {withdrawal_id} not found")
    if withdrawal['status'] != 'pending':
        raise WithdrawalStateError(
            f"Withdrawal {withdrawal_id} is already {withdrawal['status']}")

    if not store.update_withdrawal_status(withdrawal_id, status, date.today(),
                                          from_status='pending'):
        current = store.get_withdrawal(withdrawal_id)
        if current is None:
            raise NotFound(f"Withdrawal {withdrawal_id} not found")
        raise WithdrawalStateError(
            f"Withdrawal {withdrawal_id} is already {current['status']}")
    log.info("Withdrawal %s %s", withdrawal_id, status)

    notifications.notify_withdrawal_processed(store, withdrawal['user_id'],
                                              withdrawal['amount'], status)


def delete_withdrawal(store, withdrawal_id) -> None:
    if not store.delete_withdrawal(withdrawal_id):
        raise NotFound(f"Withdrawal {withdrawal_id} not found")
    log.info("Withdrawal %s deleted", withdrawal_id)


# ---------------------------------------------------------------------------
# Client settings
# ---------------------------------------------------------------------------

def update_client_currency(store, client_id, currency: str) -> None:
    currency = validate_currency(currency)
    if not store.update_client_currency(client_id, currency):
        raise NotFound(f"Client {client_id} not found")
