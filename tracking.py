"""
Shipment tracking and reconciliation back to the storefront.
"""
from errors import ValidationError, AssignmentNotFound, TrackingNotFound, OrderNotFound
from fulfillment import authorize, get_assignment, transition
from helpers import log_event, parse_datetime
from models import (db, Order, OrderTracking, utcnow, TRACKING_STATUSES, ASSIGNMENT_SHIPPED, ASSIGNMENT_COMPLETED)
from platforms import get_platform_client


def record_tracking(order_id, assignment_id, tracking_number, carrier, actor, tracking_url=None, notes=None):
    """
    Stores a tracking number and moves the assignment to shipped.

    An assignment that already shipped just gets another tracking row. When
    this ships the last outstanding assignment, transition() pushes the
    tracking to the storefront.
    """
    if not tracking_number or not carrier:
        raise ValidationError("tracking_number and carrier are required")
    assignment = get_assignment(assignment_id)
    if str(assignment.order_id) != str(order_id):
        raise AssignmentNotFound(f"Assignment {assignment_id} does not belong to order {order_id}",
                                 assignment_id=assignment_id, order_id=order_id)
    authorize(assignment, actor)

    tracking = OrderTracking(
        order_id=assignment.order_id, vendor_assignment_id=assignment.id, tracking_number=tracking_number,
        carrier=carrier, tracking_url=tracking_url, shipped_date=utcnow(), status='shipped', notes=notes,
        created_by=actor.id,
    )
    db.session.add(tracking)

    if assignment.status in (ASSIGNMENT_SHIPPED, ASSIGNMENT_COMPLETED):
        db.session.commit()
        return tracking

    try:
        transition(assignment.id, ASSIGNMENT_SHIPPED, actor, notes=f"Shipped via {carrier}: {tracking_number}")
    except Exception:
        db.session.rollback()
        raise
    return tracking


def update_tracking(tracking_id, status, actor, delivered_date=None, notes=None):
    if status not in TRACKING_STATUSES:
        raise ValidationError(f"Invalid tracking status: {status}", allowed=list(TRACKING_STATUSES))
    tracking = db.session.get(OrderTracking, tracking_id)
    if tracking is None:
        raise TrackingNotFound(f"Tracking record {tracking_id} not found", tracking_id=tracking_id)
    assignment = tracking.vendor_assignment
    authorize(assignment, actor)

    tracking.status = status
    if notes is not None:
        tracking.notes = notes
    if status == 'delivered':
        tracking.delivered_date = parse_datetime(delivered_date) or utcnow()

    if status == 'delivered' and assignment.status == ASSIGNMENT_SHIPPED:
        try:
            transition(assignment.id, ASSIGNMENT_COMPLETED, actor, notes=f"Delivered ({tracking.tracking_number})")
        except Exception:
            db.session.rollback()
            raise
    else:
        db.session.commit()
    return tracking


def get_order_tracking(order_id):
    order = db.session.get(Order, order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
    records = (OrderTracking.query.filter_by(order_id=order.id)
               .order_by(OrderTracking.created_at.desc(), OrderTracking.id.desc()).all())
    result = []
    for t in records:
        row = t.to_dict()
        vendor = t.vendor_assignment.vendor if t.vendor_assignment else None
        row['company_name'] = vendor.company_name if vendor else None
        result.append(row)
    return result


# --- RECONCILIATION ---
def push_tracking(order):
    """
    Best-effort push of the order's latest tracking number to its storefront.

    A failed push is left in the operator log for manual follow-up; local
    state is already committed and stays as it is.
    """
    store = order.store
    latest = (OrderTracking.query.filter_by(order_id=order.id)
              .order_by(OrderTracking.id.desc()).first())
    number = latest.tracking_number if latest else None
    carrier = latest.carrier if latest else None

    try:
        client = get_platform_client(store)
        ok = client.push_tracking_update(order.external_order_id, number, carrier)
        reason = client.last_error
    except Exception as e:
        ok, reason = False, str(e)

    if ok:
        log_event('Tracking', 'Success', f"Pushed tracking {number or '-'} for order {order.order_number} to {store.name}",
                  store_id=store.id)
    else:
        log_event('Tracking', 'Error',
                  f"Tracking push failed for order {order.order_number} ({store.platform}): {reason}",
                  store_id=store.id)
    return ok
