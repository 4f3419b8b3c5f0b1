"""
In-memory store with the same function surface as the db module.

Used for local development when PostgreSQL is not configured, and by tests.
All data is lost when the process exits. Thread-safe.
"""

import copy
import threading
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from calculations import ZERO, to_decimal


def _month_key(d) -> str:
    if isinstance(d, (date, datetime)):
        return d.strftime('%Y-%m')
    return str(d)[:7]


class MemoryStore:
    """Dict-backed tables keyed by id. Rows are deep-copied in and out."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tables: Dict[str, Dict[int, dict]] = defaultdict(dict)
        self._next_id: Dict[str, int] = defaultdict(lambda: 1)

    # -- internals ------------------------------------------------------------

    def _insert(self, table: str, row: dict) -> int:
        with self._lock:
            row_id = self._next_id[table]
            self._next_id[table] += 1
            stored = copy.deepcopy(row)
            stored['id'] = row_id
            self._tables[table][row_id] = stored
            return row_id

    def _get(self, table: str, row_id) -> Optional[dict]:
        with self._lock:
            row = self._tables[table].get(_as_int(row_id))
            return copy.deepcopy(row) if row else None

    def _rows(self, table: str) -> List[dict]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._tables[table].values()]

    def is_available(self) -> bool:
        return True

    def clear(self) -> None:
        with self._lock:
            self._tables.clear()
            self._next_id.clear()

    # -- clients & labels -----------------------------------------------------

    def add_client(self, name: str, email: str, role: str = 'Label Admin',
                   currency: str = 'USD', password_hash: str = '') -> int:
        return self._insert('users', {
            'name': name, 'email': email, 'role': role,
            'currency': currency, 'password_hash': password_hash,
        })

    def add_label(self, name: str, owner_id, revenue_share) -> int:
        return self._insert('labels', {
            'name': name, 'owner_id': str(owner_id),
            'revenue_share': to_decimal(revenue_share),
        })

    def get_client(self, client_id) -> Optional[dict]:
        return self._get('users', client_id)

    def list_clients(self, role: Optional[str] = None) -> List[dict]:
        rows = self._rows('users')
        if role is not None:
            rows = [r for r in rows if r.get('role') == role]
        return sorted(rows, key=lambda r: r['id'])

    def update_client_currency(self, client_id, currency: str) -> bool:
        with self._lock:
            row = self._tables['users'].get(_as_int(client_id))
            if row is None:
                return False
            row['currency'] = currency
            return True

    def find_label_by_owner_id(self, owner_id) -> Optional[dict]:
        key = str(owner_id)
        for row in sorted(self._rows('labels'), key=lambda r: r['id']):
            if row['owner_id'] == key:
                return row
        return None

    def find_label_by_owner_email(self, email: str) -> Optional[dict]:
        key = email.strip().lower()
        for row in sorted(self._rows('labels'), key=lambda r: r['id']):
            if row['owner_id'].strip().lower() == key:
                return row
        return None

    def list_labels(self) -> List[dict]:
        return sorted(self._rows('labels'), key=lambda r: r['id'])

    # -- revenue reports ------------------------------------------------------

    def insert_report(self, report: dict) -> int:
        row = dict(report)
        row.setdefault('created_at', datetime.now())
        row.setdefault('ledger_expanded', False)
        row.setdefault('pending_rows', [])
        row['total_revenue'] = to_decimal(row.get('total_revenue'))
        return self._insert('royalty_reports', row)

    def get_report(self, report_id) -> Optional[dict]:
        return self._get('royalty_reports', report_id)

    def update_report(self, report_id, fields: dict) -> bool:
        with self._lock:
            row = self._tables['royalty_reports'].get(_as_int(report_id))
            if row is None:
                return False
            row.update(copy.deepcopy(fields))
            return True

    def delete_report(self, report_id) -> bool:
        with self._lock:
            return self._tables['royalty_reports'].pop(_as_int(report_id), None) is not None

    def list_reports(self, client_id=None) -> List[dict]:
        rows = self._rows('royalty_reports')
        if client_id is not None:
            rows = [r for r in rows if r['user_id'] == _as_int(client_id)]
        clients = {c['id']: c for c in self._rows('users')}
        for r in rows:
            client = clients.get(r['user_id'], {})
            r['client_name'] = client.get('name')
            r['client_email'] = client.get('email')
        return sorted(rows, key=lambda r: (r['created_at'], r['id']), reverse=True)

    def mark_report_expanded(self, report_id, expanded: bool = True) -> None:
        fields = {'ledger_expanded': expanded}
        if expanded:
            fields['pending_rows'] = []
        self.update_report(report_id, fields)

    def list_unexpanded_reports(self) -> List[dict]:
        rows = [r for r in self._rows('royalty_reports') if not r.get('ledger_expanded')]
        return sorted(rows, key=lambda r: r['id'])

    def sum_report_gross(self, client_id) -> Decimal:
        cid = _as_int(client_id)
        return sum((r['total_revenue'] for r in self._rows('royalty_reports')
                    if r['user_id'] == cid), ZERO)

    def monthly_report_gross(self, client_id) -> List[tuple]:
        """(YYYY-MM, gross) grouped by the month of start_date, ascending."""
        cid = _as_int(client_id)
        totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        for r in self._rows('royalty_reports'):
            if r['user_id'] == cid:
                totals[_month_key(r['start_date'])] += r['total_revenue']
        return sorted(totals.items())

    # -- royalty ledger -------------------------------------------------------

    def insert_royalties(self, rows: List[dict]) -> int:
        with self._lock:
            for row in rows:
                stored = dict(row)
                stored['amount'] = to_decimal(stored.get('amount'))
                self._insert('royalties', stored)
            return len(rows)

    def list_royalties(self, client_id) -> List[dict]:
        cid = _as_int(client_id)
        rows = [r for r in self._rows('royalties') if r['user_id'] == cid]
        return sorted(rows, key=lambda r: (r['date'], r['id']), reverse=True)

    def delete_report_royalties(self, client_id, start_date, end_date, marker: str) -> int:
        cid = _as_int(client_id)
        with self._lock:
            doomed = [rid for rid, r in self._tables['royalties'].items()
                      if r['user_id'] == cid
                      and start_date <= r['date'] <= end_date
                      and r.get('description') == marker]
            for rid in doomed:
                del self._tables['royalties'][rid]
            return len(doomed)

    def delete_report_expansion(self, report_id) -> int:
        rid = _as_int(report_id)
        with self._lock:
            doomed = [k for k, r in self._tables['royalties'].items() if r.get('report_id') == rid]
            for k in doomed:
                del self._tables['royalties'][k]
            return len(doomed)

    def delete_royalty(self, royalty_id) -> bool:
        with self._lock:
            return self._tables['royalties'].pop(_as_int(royalty_id), None) is not None

    def monthly_royalty_totals(self, limit: int = 6) -> List[dict]:
        totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        for r in self._rows('royalties'):
            totals[_month_key(r['date'])] += r['amount']
        months = sorted(totals, reverse=True)[:limit]
        return [{'month': m, 'total': totals[m]} for m in months]

    # -- withdrawals ----------------------------------------------------------

    def insert_withdrawal(self, client_id, amount) -> int:
        return self._insert('withdrawals', {
            'user_id': _as_int(client_id),
            'amount': to_decimal(amount),
            'request_date': datetime.now(),
            'status': 'pending',
            'processed_date': None,
        })

    def get_withdrawal(self, withdrawal_id) -> Optional[dict]:
        return self._get('withdrawals', withdrawal_id)

    def update_withdrawal_status(self, withdrawal_id, status: str, processed_date,
                                 from_status: str = 'pending') -> bool:
        with self._lock:
            row = self._tables['withdrawals'].get(_as_int(withdrawal_id))
            if row is None or row['status'] != from_status:
                return False
            row['status'] = status
            row['processed_date'] = processed_date
            return True

    def delete_withdrawal(self, withdrawal_id) -> bool:
        with self._lock:
            return self._tables['withdrawals'].pop(_as_int(withdrawal_id), None) is not None

    def list_withdrawals(self, client_id=None) -> List[dict]:
        rows = self._rows('withdrawals')
        if client_id is not None:
            rows = [r for r in rows if r['user_id'] == _as_int(client_id)]
        return sorted(rows, key=lambda r: (r['request_date'], r['id']), reverse=True)

    def sum_withdrawals(self, client_id, status: str) -> Decimal:
        cid = _as_int(client_id)
        return sum((r['amount'] for r in self._rows('withdrawals')
                    if r['user_id'] == cid and r['status'] == status), ZERO)

    def monthly_withdrawal_totals(self, status: str = 'approved', limit: int = 6) -> List[dict]:
        totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        for r in self._rows('withdrawals'):
            if r['status'] == status:
                totals[_month_key(r['request_date'])] += r['amount']
        months = sorted(totals, reverse=True)[:limit]
        return [{'month': m, 'total': totals[m]} for m in months]

    # -- notifications --------------------------------------------------------

    def insert_notification(self, client_id, message: str, kind: str) -> int:
        return self._insert('notifications', {
            'user_id': _as_int(client_id),
            'message': message,
            'type': kind,
            'is_read': False,
            'created_at': datetime.now(),
        })

    def list_notifications(self, client_id, limit: int = 10) -> List[dict]:
        cid = _as_int(client_id)
        rows = [r for r in self._rows('notifications') if r['user_id'] == cid]
        rows.sort(key=lambda r: (r['created_at'], r['id']), reverse=True)
        return rows[:limit]

    def mark_notifications_read(self, client_id) -> int:
        cid = _as_int(client_id)
        with self._lock:
            count = 0
            for r in self._tables['notifications'].values():
                if r['user_id'] == cid and not r['is_read']:
                    r['is_read'] = True
                    count += 1
            return count


def _as_int(val):
    try:
        return int(val)
    except (TypeError, ValueError):
        return val
