"""
Client notification relay. Fire-and-forget: a failed notification is logged
and never fails the write that triggered it.
"""

import logging
from datetime import date

from calculations import to_decimal

log = logging.getLogger('royalty')


def _relay(store, client_id, message: str, kind: str) -> bool:
    try:
        store.insert_notification(client_id, message, kind)
        log.info("Notification for client %s: %s", client_id, message)
        return True
    except Exception as e:
        log.warning("Notification for client %s failed: %s", client_id, e)
        return False


def notify_revenue_added(store, client_id, period_start: date) -> bool:
    month_name = period_start.strftime('%B')
    return _relay(store, client_id, f"Present month ({month_name}) revenue added.", 'revenue')


def notify_withdrawal_processed(store, client_id, amount, status: str) -> bool:
    amount_str = f"{to_decimal(amount):,.2f}"
    return _relay(store, client_id,
                  f"Your withdrawal request for ${amount_str} has been {status}.", 'withdrawal')
