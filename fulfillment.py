"""
Per-assignment fulfillment state machine and the order status derived from it.

The order's status is never set directly once vendors are assigned: it is
recomputed from its assignments every time one of them moves.
"""
from sqlalchemy import update

from errors import AssignmentNotFound, OrderNotFound, Forbidden, InvalidTransition, ConcurrentUpdate
from helpers import record_history
from models import (db, Vendor, VendorAssignment, utcnow, ORDER_PENDING, ORDER_ASSIGNED, ORDER_SHIPPED,
                    ORDER_COMPLETED, ASSIGNMENT_ASSIGNED, ASSIGNMENT_ACCEPTED, ASSIGNMENT_IN_PROGRESS, ASSIGNMENT_SHIPPED,
                    ASSIGNMENT_COMPLETED, ASSIGNMENT_CANCELLED)

ALLOWED_TRANSITIONS = {
    ASSIGNMENT_ASSIGNED: (ASSIGNMENT_ACCEPTED, ASSIGNMENT_CANCELLED),
    ASSIGNMENT_ACCEPTED: (ASSIGNMENT_IN_PROGRESS, ASSIGNMENT_CANCELLED),
    ASSIGNMENT_IN_PROGRESS: (ASSIGNMENT_SHIPPED, ASSIGNMENT_COMPLETED, ASSIGNMENT_ASSIGNED),
    ASSIGNMENT_SHIPPED: (ASSIGNMENT_COMPLETED,),
    ASSIGNMENT_COMPLETED: (),
    ASSIGNMENT_CANCELLED: (),
}

OPERATOR_ROLES = ('admin', 'manager')
SHIPPED_OR_DONE = (ORDER_SHIPPED, ORDER_COMPLETED)


class Actor:
    """Who is acting, as asserted by the auth layer in front of the app."""

    def __init__(self, id=None, role=None):
        self.id = id
        self.role = role

    @classmethod
    def from_headers(cls, headers):
        user_id = headers.get('X-User-Id')
        try:
            user_id = int(user_id) if user_id else None
        except ValueError:
            user_id = None
        return cls(user_id, (headers.get('X-User-Role') or '').lower() or None)

    @property
    def is_operator(self):
        return self.role in OPERATOR_ROLES

    def __repr__(self):
        return f"<Actor {self.id} {self.role}>"


def authorize(assignment, actor):
    if actor is None:
        raise Forbidden("No acting user")
    if actor.is_operator:
        return
    vendor = assignment.vendor
    if actor.id is not None and vendor is not None and vendor.user_id == actor.id:
        return
    raise Forbidden(f"User {actor.id} may not act on assignment {assignment.id}", assignment_id=assignment.id)


def vendor_for(actor):
    """The vendor profile behind a non-operator actor, or None."""
    if actor is None or actor.id is None:
        return None
    return Vendor.query.filter_by(user_id=actor.id).first()


def authorize_order(order, actor):
    """Read access: operators see every order, a vendor only orders it is assigned to."""
    if actor is not None and actor.is_operator:
        return
    vendor = vendor_for(actor)
    if vendor is not None and any(a.vendor_id == vendor.id for a in order.assignments):
        return
    # Answered like a missing order: a vendor learns nothing about other tenants' orders
    raise OrderNotFound(f"Order {order.id} not found", order_id=order.id)


def get_assignment(assignment_id):
    assignment = db.session.get(VendorAssignment, assignment_id)
    if assignment is None:
        raise AssignmentNotFound(f"Assignment {assignment_id} not found", assignment_id=assignment_id)
    return assignment


def transition(assignment_id, new_status, actor, notes=None):
    assignment = get_assignment(assignment_id)
    authorize(assignment, actor)

    current = assignment.status
    allowed = ALLOWED_TRANSITIONS.get(current, ())
    if new_status not in allowed:
        raise InvalidTransition(f"Cannot move assignment {assignment.id} from {current} to {new_status}",
                                current=current, requested=new_status, allowed=list(allowed))

    order = assignment.order
    try:
        # Optimistic: whoever moved it first wins, the loser sees ConcurrentUpdate
        result = db.session.execute(
            update(VendorAssignment)
            .where(VendorAssignment.id == assignment.id, VendorAssignment.status == current)
            .values(status=new_status, updated_at=utcnow())
            .execution_options(synchronize_session='evaluate')
        )
        if result.rowcount == 0:
            raise ConcurrentUpdate(f"Assignment {assignment.id} changed while being updated", assignment_id=assignment.id)

        record_history(order.id, new_status, old_status=current, changed_by=actor.id, notes=notes,
                       assignment_id=assignment.id)
        reconcile = apply_order_status(order, actor)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if reconcile:
        from tracking import push_tracking
        push_tracking(order)
    return assignment


def derive_order_status(statuses):
    """
    Folds assignment statuses into the order status.

    Cancelled assignments do not vote unless they are all there is, in which
    case the order is unassigned again. None means no assignments, no opinion.
    """
    statuses = list(statuses)
    if not statuses:
        return None
    live = [s for s in statuses if s != ASSIGNMENT_CANCELLED]
    if not live:
        return ORDER_PENDING
    if all(s == ASSIGNMENT_COMPLETED for s in live):
        return ORDER_COMPLETED
    if all(s in (ASSIGNMENT_SHIPPED, ASSIGNMENT_COMPLETED) for s in live):
        return ORDER_SHIPPED
    return ORDER_ASSIGNED


def apply_order_status(order, actor=None):
    """Writes the derived status onto the order. True when reconciliation is due."""
    derived = derive_order_status(a.status for a in order.assignments)
    if derived is None or derived == order.order_status:
        return False
    old = order.order_status
    order.order_status = derived
    record_history(order.id, derived, old_status=old, changed_by=actor.id if actor else None,
                   notes="Order status derived from vendor assignments")
    return derived in SHIPPED_OR_DONE and old not in SHIPPED_OR_DONE
