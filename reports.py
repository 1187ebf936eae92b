"""
Read-side views: the order list and per-vendor performance.
"""
from collections import OrderedDict
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select, or_

from errors import ValidationError, VendorNotFound
from fulfillment import vendor_for
from helpers import parse_datetime
from models import db, Order, Vendor, VendorAssignment, utcnow, ASSIGNMENT_COMPLETED, ASSIGNMENT_CANCELLED

MAX_PAGE_SIZE = 200
MAX_METRICS_DAYS = 365


def _positive_int(value, name, default, maximum=None):
    if value in (None, ''):
        return default
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", field=name)
    if value < 1:
        raise ValidationError(f"{name} must be positive", field=name)
    if maximum is not None and value > maximum:
        raise ValidationError(f"{name} must be at most {maximum}", field=name)
    return value


def _date_filter(value, name):
    if not value:
        return None
    try:
        return parse_datetime(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} is not a valid date", field=name)


def _assigned_to(vendor_id):
    return Order.id.in_(select(VendorAssignment.order_id).where(VendorAssignment.vendor_id == vendor_id))


def list_orders(filters, actor):
    """
    Paginated order list, newest order_date first.

    filters: status, store_id, vendor_id, search (order number, customer name
    or email), date_from, date_to (inclusive, on order_date), page, limit.
    A vendor only ever sees orders assigned to it; its vendor_id filter is
    ignored.
    """
    page = _positive_int(filters.get('page'), 'page', 1)
    limit = _positive_int(filters.get('limit'), 'limit', 50, MAX_PAGE_SIZE)

    query = Order.query
    if not actor.is_operator:
        vendor = vendor_for(actor)
        if vendor is None:
            raise VendorNotFound("Vendor profile not found", user_id=actor.id)
        query = query.filter(_assigned_to(vendor.id))
    elif filters.get('vendor_id'):
        query = query.filter(_assigned_to(_positive_int(filters['vendor_id'], 'vendor_id', None)))

    if filters.get('status'):
        query = query.filter(Order.order_status == filters['status'])
    if filters.get('store_id'):
        query = query.filter(Order.store_id == _positive_int(filters['store_id'], 'store_id', None))
    if filters.get('search'):
        term = f"%{filters['search']}%"
        query = query.filter(or_(Order.order_number.ilike(term), Order.customer_name.ilike(term),
                                 Order.customer_email.ilike(term)))
    date_from = _date_filter(filters.get('date_from'), 'date_from')
    if date_from:
        query = query.filter(Order.order_date >= date_from)
    date_to = _date_filter(filters.get('date_to'), 'date_to')
    if date_to:
        query = query.filter(Order.order_date <= date_to)

    total = query.count()
    orders = (query.order_by(Order.order_date.desc().nullslast(), Order.id.desc())
              .offset((page - 1) * limit).limit(limit).all())

    rows = []
    for order in orders:
        row = order.to_dict(with_items=False)
        row['store_name'] = order.store.name if order.store else None
        row['vendor_assignments'] = [{
            'id': a.id, 'vendor_id': a.vendor_id, 'status': a.status,
            'company_name': a.vendor.company_name if a.vendor else None,
            'assigned_at': a.assigned_at.isoformat() if a.assigned_at else None,
        } for a in order.assignments]
        rows.append(row)

    return {
        'orders': rows,
        'pagination': {'page': page, 'limit': limit, 'total': total, 'pages': -(-total // limit)},
    }


def vendor_metrics(vendor_id, period=30):
    """
    Day-by-day assignment counts, completions and commission for the last
    `period` days, newest day first, plus totals over the window.

    Commission of cancelled assignments is not owed and is left out of the
    sums; they still count as assignments.
    """
    period = _positive_int(period, 'period', 30, MAX_METRICS_DAYS)
    if db.session.get(Vendor, vendor_id) is None:
        raise VendorNotFound(f"Vendor {vendor_id} not found", vendor_id=vendor_id)

    today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    since = today - timedelta(days=period)
    assignments = (VendorAssignment.query.filter(VendorAssignment.vendor_id == vendor_id,
                                                 VendorAssignment.assigned_at >= since)
                   .order_by(VendorAssignment.assigned_at.desc(), VendorAssignment.id.desc()).all())

    days = OrderedDict()
    for a in assignments:
        day = days.setdefault(a.assigned_at.date().isoformat(), {
            'assignments': 0, 'completed': 0, 'commission': Decimal('0.00'), 'order_values': [],
        })
        day['assignments'] += 1
        if a.status == ASSIGNMENT_COMPLETED:
            day['completed'] += 1
        if a.status != ASSIGNMENT_CANCELLED:
            day['commission'] += a.commission_amount or Decimal('0.00')
        day['order_values'].append(a.order.total_amount or Decimal('0.00'))

    metrics = []
    for date, day in days.items():
        values = day['order_values']
        metrics.append({
            'date': date,
            'assignments': day['assignments'],
            'completed': day['completed'],
            'commission': float(day['commission']),
            'avg_order_value': round(float(sum(values) / len(values)), 2),
        })

    return {
        'vendor_id': vendor_id,
        'period': period,
        'metrics': metrics,
        'totals': {
            'assignments': sum(m['assignments'] for m in metrics),
            'completed': sum(m['completed'] for m in metrics),
            'commission': float(sum((d['commission'] for d in days.values()), Decimal('0.00'))),
        },
    }
