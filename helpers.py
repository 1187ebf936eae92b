import json
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from models import db, SyncLog, AppSetting, OrderStatusHistory, Notification

CENTS = Decimal('0.01')


# --- MONEY ---
def to_money(value):
    """Coerce platform/JSON numbers (str, float, int, None) to a 2dp Decimal."""
    if value is None or value == '':
        return Decimal('0.00')
    try:
        return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Not a monetary amount: {value!r}")


def compute_commission(amount, rate):
    return (to_money(amount) * Decimal(str(rate or 0)) / Decimal('100')).quantize(CENTS, rounding=ROUND_HALF_UP)


# --- TIME ---
def parse_datetime(value):
    """Platform timestamps (ISO 8601 or RFC 2822) -> naive UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        try:
            dt = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            from email.utils import parsedate_to_datetime
            dt = parsedate_to_datetime(text)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def to_iso_utc(value):
    """Naive UTC watermark -> '2024-01-01T00:00:00+00:00' for platform query params."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


# --- PER-STORE CONFIG ---
def get_config(store_id, key, default=None):
    if store_id is None:
        return default
    try:
        setting = AppSetting.query.filter_by(store_id=store_id, key=key).first()
        if not setting:
            return default
        try:
            return json.loads(setting.value)
        except ValueError:
            return setting.value
    except Exception as e:
        print(f"Config Read Error ({key}): {e}")
        return default


def set_config(store_id, key, value):
    try:
        setting = AppSetting.query.filter_by(store_id=store_id, key=key).first()
        if not setting:
            setting = AppSetting(store_id=store_id, key=key)
            db.session.add(setting)
        setting.value = json.dumps(value)
        db.session.commit()
        return True
    except Exception as e:
        print(f"Config Save Error ({key}): {e}")
        db.session.rollback()
        return False


# --- OPERATOR LOG ---
def log_event(entity, status, message, store_id=None):
    """Writes an operator-visible SyncLog row and commits.

    Only call this at a transaction boundary: the commit flushes whatever
    else is pending on the session.
    """
    try:
        log = SyncLog(store_id=store_id, entity=entity, status=status, message=message)
        db.session.add(log)
        db.session.commit()
    except Exception as e:
        print(f"DB LOG ERROR: {e}")
        db.session.rollback()


# --- AUDIT + NOTIFICATION ROWS (added to the caller's transaction, not committed) ---
def record_history(order_id, new_status, old_status=None, changed_by=None, notes=None, assignment_id=None):
    entry = OrderStatusHistory(order_id=order_id, vendor_assignment_id=assignment_id, old_status=old_status,
                               new_status=new_status, changed_by=changed_by, notes=notes)
    db.session.add(entry)
    return entry


def queue_notification(user_id, type, title, message, data=None):
    if not user_id:
        return None
    note = Notification(user_id=user_id, type=type, title=title, message=message, data=data or {})
    db.session.add(note)
    return note
