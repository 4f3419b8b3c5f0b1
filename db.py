"""
PostgreSQL connection pool and all DB operations for the royalty ledger.
Every query function raises StoreUnavailable on connection or query failure;
callers on the read path decide whether to degrade. Constraint violations
(foreign keys, CHECKs, numeric overflow) raise ValidationError instead.
"""

import json
import logging
import os
from contextlib import contextmanager
from decimal import Decimal
from typing import List, Optional

from errors import StoreUnavailable, ValidationError

log = logging.getLogger('royalty')

_pool = None


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------

def init_pool() -> bool:
    """Initialise a threaded connection pool. Returns True on success."""
    global _pool
    try:
        import psycopg2
        from psycopg2 import pool as pg_pool

        host = os.getenv('DB_HOST', '')
        if not host:
            log.info("DB_HOST not set, PostgreSQL disabled")
            return False

        _pool = pg_pool.ThreadedConnectionPool(
            minconn=2,
            maxconn=int(os.getenv('DB_MAX_CONN', '10')),
            host=host,
            port=int(os.getenv('DB_PORT', '5432')),
            dbname=os.getenv('DB_NAME', 'royalty_ledger'),
            user=os.getenv('DB_USER', 'postgres'),
            password=os.getenv('DB_PASSWORD', ''),
            connect_timeout=5,
        )
        # Quick connectivity test
        conn = _pool.getconn()
        conn.cursor().execute('SELECT 1')
        conn.commit()
        _pool.putconn(conn)
        log.info("PostgreSQL pool initialised (%s:%s/%s)",
                 host, os.getenv('DB_PORT', '5432'), os.getenv('DB_NAME', 'royalty_ledger'))
        return True
    except Exception as e:
        log.warning("PostgreSQL unavailable: %s", e)
        _pool = None
        return False


def is_available() -> bool:
    """Check if PostgreSQL pool is ready."""
    return _pool is not None


@contextmanager
def get_conn():
    """Context manager: yields a connection, auto-commits on success, rollbacks on error.

    Integrity and data errors are re-raised as ValidationError, every other
    psycopg2 error as StoreUnavailable.
    """
    import psycopg2

    if _pool is None:
        raise StoreUnavailable("PostgreSQL pool not initialised")
    try:
        conn = _pool.getconn()
    except psycopg2.Error as e:
        raise StoreUnavailable(f"Could not get connection: {e}") from e
    try:
        yield conn
        conn.commit()
    except (psycopg2.IntegrityError, psycopg2.DataError) as e:
        conn.rollback()
        raise ValidationError(f"Rejected by database: {str(e).strip()}") from e
    except psycopg2.Error as e:
        conn.rollback()
        raise StoreUnavailable(str(e)) from e
    except Exception:
        conn.rollback()
        raise
    finally:
        _pool.putconn(conn)


def _fetch_dicts(cur) -> List[dict]:
    cols = [c[0] for c in cur.description]
    return [dict(zip(cols, row)) for row in cur.fetchall()]


def _fetch_dict(cur) -> Optional[dict]:
    row = cur.fetchone()
    if not row:
        return None
    return dict(zip([c[0] for c in cur.description], row))


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

def run_migrations(migrations_dir: str):
    """Apply numbered .sql files that haven't been applied yet."""
    if not is_available():
        return

    sql_files = sorted(f for f in os.listdir(migrations_dir) if f.endswith('.sql'))
    if not sql_files:
        return

    with get_conn() as conn:
        cur = conn.cursor()
        # Ensure schema_version exists (bootstrap)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version     INTEGER PRIMARY KEY,
                applied_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
                description TEXT
            )
        """)
        conn.commit()

        cur.execute("SELECT version FROM schema_version")
        applied = {row[0] for row in cur.fetchall()}

        for fname in sql_files:
            # Extract version number from filename like "001_initial_schema.sql"
            try:
                version = int(fname.split('_')[0])
            except (ValueError, IndexError):
                continue
            if version in applied:
                continue

            log.info("Applying migration %s ...", fname)
            with open(os.path.join(migrations_dir, fname), 'r') as f:
                sql = f.read()
            cur.execute(sql)
            cur.execute("INSERT INTO schema_version (version, description) VALUES (%s, %s)",
                        (version, fname))
            conn.commit()
            log.info("Migration %s applied", fname)


# ---------------------------------------------------------------------------
# Clients & labels
# ---------------------------------------------------------------------------

def get_client(client_id) -> Optional[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT id, name, email, role, currency FROM users WHERE id = %s",
                    (client_id,))
        return _fetch_dict(cur)


def list_clients(role: Optional[str] = None) -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        if role is None:
            cur.execute("SELECT id, name, email, role, currency FROM users ORDER BY id")
        else:
            cur.execute("SELECT id, name, email, role, currency FROM users "
                        "WHERE role = %s ORDER BY id", (role,))
        return _fetch_dicts(cur)


def update_client_currency(client_id, currency: str) -> bool:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("UPDATE users SET currency = %s WHERE id = %s", (currency, client_id))
        return cur.rowcount > 0


def find_label_by_owner_id(owner_id) -> Optional[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            SELECT id, name, owner_id, revenue_share FROM labels
            WHERE owner_id = %s ORDER BY id LIMIT 1
        """, (str(owner_id),))
        return _fetch_dict(cur)


def find_label_by_owner_email(email: str) -> Optional[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            SELECT id, name, owner_id, revenue_share FROM labels
            WHERE LOWER(TRIM(owner_id)) = LOWER(TRIM(%s)) ORDER BY id LIMIT 1
        """, (email,))
        return _fetch_dict(cur)


def list_labels() -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT id, name, owner_id, revenue_share FROM labels ORDER BY id")
        return _fetch_dicts(cur)


# ---------------------------------------------------------------------------
# Revenue reports
# ---------------------------------------------------------------------------

_REPORT_COLS = """id, user_id, start_date, end_date, total_revenue, file_url, filename,
                  created_at, ledger_expanded, pending_rows"""

_REPORT_UPDATABLE = {'user_id', 'start_date', 'end_date', 'total_revenue'}


def _decode_report(row: Optional[dict]) -> Optional[dict]:
    if row is None:
        return None
    pending = row.get('pending_rows')
    if isinstance(pending, str):
        row['pending_rows'] = json.loads(pending)
    elif pending is None:
        row['pending_rows'] = []
    return row


def insert_report(report: dict) -> int:
    """Insert a report row with ledger_expanded = false. Returns report id."""
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            INSERT INTO royalty_reports (user_id, start_date, end_date, total_revenue,
                                         file_url, filename, ledger_expanded, pending_rows)
            VALUES (%s, %s, %s, %s, %s, %s, FALSE, %s) RETURNING id
        """, (report['user_id'], report['start_date'], report['end_date'],
              report['total_revenue'], report.get('file_url', ''),
              report.get('filename', ''), json.dumps(report.get('pending_rows', []))))
        return cur.fetchone()[0]


def get_report(report_id) -> Optional[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(f"SELECT {_REPORT_COLS} FROM royalty_reports WHERE id = %s", (report_id,))
        return _decode_report(_fetch_dict(cur))


def update_report(report_id, fields: dict) -> bool:
    cols = [c for c in fields if c in _REPORT_UPDATABLE]
    if not cols:
        return get_report(report_id) is not None
    assignments = ', '.join(f"{c} = %s" for c in cols)
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(f"UPDATE royalty_reports SET {assignments} WHERE id = %s",
                    [fields[c] for c in cols] + [report_id])
        return cur.rowcount > 0


def delete_report(report_id) -> bool:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM royalty_reports WHERE id = %s RETURNING id", (report_id,))
        return cur.fetchone() is not None


def list_reports(client_id=None) -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        sql = """
            SELECT r.id, r.user_id, r.start_date, r.end_date, r.total_revenue, r.file_url,
                   r.filename, r.created_at, r.ledger_expanded, r.pending_rows,
                   u.name AS client_name, u.email AS client_email
            FROM royalty_reports r
            LEFT JOIN users u ON r.user_id = u.id
        """
        if client_id is None:
            cur.execute(sql + " ORDER BY r.created_at DESC, r.id DESC")
        else:
            cur.execute(sql + " WHERE r.user_id = %s ORDER BY r.created_at DESC, r.id DESC",
                        (client_id,))
        return [_decode_report(r) for r in _fetch_dicts(cur)]


def mark_report_expanded(report_id, expanded: bool = True) -> None:
    with get_conn() as conn:
        cur = conn.cursor()
        if expanded:
            cur.execute("""
                UPDATE royalty_reports SET ledger_expanded = TRUE, pending_rows = '[]'
                WHERE id = %s
            """, (report_id,))
        else:
            cur.execute("UPDATE royalty_reports SET ledger_expanded = FALSE WHERE id = %s",
                        (report_id,))


def list_unexpanded_reports() -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(f"SELECT {_REPORT_COLS} FROM royalty_reports "
                    "WHERE NOT ledger_expanded ORDER BY id")
        return [_decode_report(r) for r in _fetch_dicts(cur)]


def sum_report_gross(client_id) -> Decimal:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT COALESCE(SUM(total_revenue), 0) FROM royalty_reports "
                    "WHERE user_id = %s", (client_id,))
        return Decimal(cur.fetchone()[0])


def monthly_report_gross(client_id) -> List[tuple]:
    """(YYYY-MM, gross) grouped by the month of start_date, ascending."""
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            SELECT to_char(start_date, 'YYYY-MM') AS month, SUM(total_revenue)
            FROM royalty_reports
            WHERE user_id = %s
            GROUP BY month
            ORDER BY month ASC
        """, (client_id,))
        return [(r[0], Decimal(r[1])) for r in cur.fetchall()]


# ---------------------------------------------------------------------------
# Royalty ledger
# ---------------------------------------------------------------------------

def insert_royalties(rows: List[dict]) -> int:
    """Batch insert ledger rows in one statement. Returns row count."""
    if not rows:
        return 0
    from psycopg2.extras import execute_values

    with get_conn() as conn:
        cur = conn.cursor()
        execute_values(cur, """
            INSERT INTO royalties (user_id, amount, date, description, source, report_id)
            VALUES %s
        """, [(r['user_id'], r['amount'], r['date'], r.get('description'), r.get('source'),
               r.get('report_id')) for r in rows])
        return len(rows)


def list_royalties(client_id) -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            SELECT id, user_id, amount, date, description, source, report_id FROM royalties
            WHERE user_id = %s ORDER BY date DESC, id DESC
        """, (client_id,))
        return _fetch_dicts(cur)


def delete_report_expansion(report_id) -> int:
    """Delete ledger rows written by an earlier expansion of this report."""
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM royalties WHERE report_id = %s", (report_id,))
        return cur.rowcount


def delete_report_royalties(client_id, start_date, end_date, marker: str) -> int:
    """Delete report-derived ledger rows inside [start_date, end_date]. Returns count."""
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            DELETE FROM royalties
            WHERE user_id = %s AND date >= %s AND date <= %s AND description = %s
        """, (client_id, start_date, end_date, marker))
        return cur.rowcount


def delete_royalty(royalty_id) -> bool:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM royalties WHERE id = %s", (royalty_id,))
        return cur.rowcount > 0


def monthly_royalty_totals(limit: int = 6) -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            SELECT to_char(date, 'YYYY-MM') AS month, SUM(amount) AS total
            FROM royalties GROUP BY month ORDER BY month DESC LIMIT %s
        """, (limit,))
        return _fetch_dicts(cur)


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------

_WITHDRAWAL_COLS = "id, user_id, amount, request_date, status, processed_date"


def insert_withdrawal(client_id, amount) -> int:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            INSERT INTO withdrawals (user_id, amount, request_date, status)
            VALUES (%s, %s, now(), 'pending') RETURNING id
        """, (client_id, amount))
        return cur.fetchone()[0]


def get_withdrawal(withdrawal_id) -> Optional[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(f"SELECT {_WITHDRAWAL_COLS} FROM withdrawals WHERE id = %s",
                    (withdrawal_id,))
        return _fetch_dict(cur)


def update_withdrawal_status(withdrawal_id, status: str, processed_date,
                             from_status: str = 'pending') -> bool:
    """Set the status only while the row is still in from_status. False if no row changed."""
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            UPDATE withdrawals SET status = %s, processed_date = %s
            WHERE id = %s AND status = %s
        """, (status, processed_date, withdrawal_id, from_status))
        return cur.rowcount > 0


def delete_withdrawal(withdrawal_id) -> bool:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM withdrawals WHERE id = %s", (withdrawal_id,))
        return cur.rowcount > 0


def list_withdrawals(client_id=None) -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        if client_id is None:
            cur.execute(f"SELECT {_WITHDRAWAL_COLS} FROM withdrawals "
                        "ORDER BY request_date DESC, id DESC")
        else:
            cur.execute(f"SELECT {_WITHDRAWAL_COLS} FROM withdrawals WHERE user_id = %s "
                        "ORDER BY request_date DESC, id DESC", (client_id,))
        return _fetch_dicts(cur)


def sum_withdrawals(client_id, status: str) -> Decimal:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("SELECT COALESCE(SUM(amount), 0) FROM withdrawals "
                    "WHERE user_id = %s AND status = %s", (client_id, status))
        return Decimal(cur.fetchone()[0])


def monthly_withdrawal_totals(status: str = 'approved', limit: int = 6) -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            SELECT to_char(request_date, 'YYYY-MM') AS month, SUM(amount) AS total
            FROM withdrawals WHERE status = %s
            GROUP BY month ORDER BY month DESC LIMIT %s
        """, (status, limit))
        return _fetch_dicts(cur)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

def insert_notification(client_id, message: str, kind: str) -> int:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            INSERT INTO notifications (user_id, message, type) VALUES (%s, %s, %s) RETURNING id
        """, (client_id, message, kind))
        return cur.fetchone()[0]


def list_notifications(client_id, limit: int = 10) -> List[dict]:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("""
            SELECT id, user_id, message, type, is_read, created_at FROM notifications
            WHERE user_id = %s ORDER BY created_at DESC, id DESC LIMIT %s
        """, (client_id, limit))
        return _fetch_dicts(cur)


def mark_notifications_read(client_id) -> int:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute("UPDATE notifications SET is_read = TRUE "
                    "WHERE user_id = %s AND NOT is_read", (client_id,))
        return cur.rowcount
