"""
Vendor assignment engine: full assignment, split assignment, split preview.

Every assignment call is destructive. A full assignment or a split always
replaces all existing assignments of the order; there is no additive split.
Orders with a shipped or completed assignment refuse to be re-assigned.
"""
from collections import defaultdict
from decimal import Decimal, InvalidOperation

from sqlalchemy import select

from errors import (OrderNotFound, VendorNotFound, VendorNotApproved, OverAllocation, ValidationError,
                    AssignmentLocked)
from helpers import CENTS, compute_commission, to_money, log_event, record_history, queue_notification
from models import (db, Order, Vendor, VendorAssignment, OrderItemAssignment, utcnow, ORDER_ASSIGNED,
                    ASSIGNMENT_ASSIGNED, ASSIGNMENT_SHIPPED, ASSIGNMENT_COMPLETED)

LOCKED_STATUSES = (ASSIGNMENT_SHIPPED, ASSIGNMENT_COMPLETED)


def _get_order(order_id, lock=False):
    stmt = select(Order).filter_by(id=order_id)
    if lock:
        # Serialises concurrent assign/split requests on the same order
        stmt = stmt.with_for_update()
    order = db.session.execute(stmt).scalar_one_or_none()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
    return order


def _get_approved_vendor(vendor_id):
    vendor = db.session.get(Vendor, vendor_id) if vendor_id is not None else None
    if vendor is None:
        raise VendorNotFound(f"Vendor {vendor_id} not found", vendor_id=vendor_id)
    if not vendor.is_approved:
        raise VendorNotApproved(f"Vendor {vendor.company_name or vendor.id} is not approved", vendor_id=vendor.id)
    return vendor


def _clear_assignments(order):
    locked = [a.id for a in order.assignments if a.status in LOCKED_STATUSES]
    if locked:
        raise AssignmentLocked(f"Order {order.id} has shipped or completed assignments and cannot be re-assigned",
                               assignment_ids=locked)
    order.assignments.clear()
    db.session.flush()


def _as_int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer, got {value!r}", field=field)


def validate_splits(splits):
    if not isinstance(splits, list) or not splits:
        raise ValidationError("splits must be a non-empty list")
    for index, split in enumerate(splits):
        if not isinstance(split, dict) or split.get('vendor_id') is None:
            raise ValidationError(f"Split #{index + 1} has no vendor_id", split=index)
        entries = split.get('items')
        if not entries:
            raise ValidationError(f"Split #{index + 1} assigns no items", split=index)
        if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
            raise ValidationError(f"Split #{index + 1} items must be a list of {{item_id, quantity}} objects",
                                  split=index)


def allocate(order, splits):
    """
    Allocation arithmetic shared by preview_split and split_assign.

    Returns (breakdown, over_allocated). Each breakdown entry carries the
    vendor (None when unknown), the split's gross amount (sum of quantity x
    unit price), its commission and the per-item lines. over_allocated lists
    every item whose summed requested quantity exceeds the item quantity.
    """
    items = {i.id: i for i in order.items}
    requested = defaultdict(int)
    breakdown = []

    for split in splits:
        vendor_id = split.get('vendor_id')
        vendor = db.session.get(Vendor, vendor_id)
        lines = []
        split_amount = Decimal('0.00')
        for entry in split.get('items') or []:
            item_id = _as_int(entry.get('item_id'), 'item_id')
            quantity = _as_int(entry.get('quantity'), 'quantity')
            item = items.get(item_id)
            if item is None:
                raise ValidationError(f"Item {item_id} does not belong to order {order.id}", item_id=item_id)
            if quantity <= 0:
                raise ValidationError(f"Quantity for item {item_id} must be positive", item_id=item_id)
            amount = (to_money(item.unit_price) * quantity).quantize(CENTS)
            requested[item_id] += quantity
            split_amount += amount
            lines.append({'item': item, 'quantity': quantity, 'amount': amount})

        breakdown.append({
            'vendor_id': vendor_id,
            'vendor': vendor,
            'notes': split.get('notes'),
            'lines': lines,
            'split_amount': split_amount,
            'commission_amount': compute_commission(split_amount, vendor.commission_rate) if vendor else Decimal('0.00'),
        })

    over_allocated = [
        {'item_id': item_id, 'sku': items[item_id].sku, 'quantity': items[item_id].quantity, 'requested': qty}
        for item_id, qty in sorted(requested.items()) if qty > items[item_id].quantity
    ]
    return breakdown, over_allocated


def order_gross_amount(order):
    return sum((to_money(i.unit_price) * i.quantity for i in order.items), Decimal('0.00'))


def assign_full(order_id, vendor_id, assigned_by=None, notes=None):
    try:
        order = _get_order(order_id, lock=True)
        vendor = _get_approved_vendor(vendor_id)
        old_status = order.order_status
        _clear_assignments(order)

        amount = to_money(order.total_amount)
        assignment = VendorAssignment(
            vendor=vendor, assignment_type='full', assigned_amount=amount,
            commission_amount=compute_commission(amount, vendor.commission_rate),
            status=ASSIGNMENT_ASSIGNED, notes=notes, assigned_by=assigned_by, assigned_at=utcnow(),
        )
        order.assignments.append(assignment)
        db.session.flush()

        record_history(order.id, ORDER_ASSIGNED, old_status=old_status, changed_by=assigned_by,
                       notes=f"Assigned to {vendor.company_name or 'vendor'}", assignment_id=assignment.id)
        queue_notification(vendor.user_id, 'order_assignment', 'New Order Assignment',
                           f"You have been assigned order #{order.order_number}",
                           {'order_id': order.id, 'assignment_id': assignment.id})
        order.order_status = ORDER_ASSIGNED
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_event('Assignment', 'Success', f"Order {order.order_number} assigned to vendor {vendor.id}",
              store_id=order.store_id)
    return assignment


def split_assign(order_id, splits, assigned_by=None):
    """
    Replaces every assignment of the order with one partial assignment per
    split. All-or-nothing: any validation failure commits nothing.
    """
    validate_splits(splits)
    try:
        order = _get_order(order_id, lock=True)
        breakdown, over_allocated = allocate(order, splits)
        if over_allocated:
            raise OverAllocation(f"Split assigns more than the ordered quantity for {len(over_allocated)} item(s)",
                                 items=over_allocated)
        for entry in breakdown:
            _get_approved_vendor(entry['vendor_id'])

        old_status = order.order_status
        _clear_assignments(order)

        created = []
        for entry in breakdown:
            vendor = entry['vendor']
            assignment = VendorAssignment(
                vendor=vendor, assignment_type='partial', assigned_amount=entry['split_amount'],
                commission_amount=entry['commission_amount'], status=ASSIGNMENT_ASSIGNED,
                notes=entry['notes'], assigned_by=assigned_by, assigned_at=utcnow(),
            )
            for line in entry['lines']:
                assignment.item_assignments.append(OrderItemAssignment(
                    order_item=line['item'], external_item_id=line['item'].external_item_id,
                    quantity=line['quantity'], assigned_amount=line['amount'],
                ))
            order.assignments.append(assignment)
            created.append(assignment)
        db.session.flush()

        for assignment, entry in zip(created, breakdown):
            queue_notification(entry['vendor'].user_id, 'order_split_assignment', 'Order Split Assignment',
                               f"You have been assigned items from order #{order.order_number}",
                               {'order_id': order.id, 'assignment_id': assignment.id,
                                'split_amount': float(entry['split_amount'])})

        total = sum((e['split_amount'] for e in breakdown), Decimal('0.00'))
        record_history(order.id, 'split_assigned', old_status=old_status, changed_by=assigned_by,
                       notes=f"Order split among {len(breakdown)} vendors. Total assigned: ${total:.2f}")
        order.order_status = ORDER_ASSIGNED
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_event('Assignment', 'Success', f"Order {order.order_number} split among {len(created)} vendors",
              store_id=order.store_id)
    return created


def preview_split(order_id, splits):
    """Read-only. Same arithmetic as split_assign, nothing is written."""
    validate_splits(splits)
    order = _get_order(order_id)
    breakdown, over_allocated = allocate(order, splits)

    total_order = order_gross_amount(order)
    total_assigned = sum((e['split_amount'] for e in breakdown), Decimal('0.00'))
    preview_splits = []
    for entry in breakdown:
        vendor = entry['vendor']
        preview_splits.append({
            'vendor_id': entry['vendor_id'],
            'vendor': vendor.company_name if vendor else 'Unknown',
            'vendor_approved': bool(vendor and vendor.is_approved),
            'commission_rate': float(vendor.commission_rate or 0) if vendor else 0.0,
            'split_amount': float(entry['split_amount']),
            'commission_amount': float(entry['commission_amount']),
            'items': [{
                'item_id': line['item'].id,
                'product_name': line['item'].product_name,
                'sku': line['item'].sku,
                'quantity': line['item'].quantity,
                'unit_price': float(line['item'].unit_price),
                'assigned_quantity': line['quantity'],
                'assigned_amount': float(line['amount']),
            } for line in entry['lines']],
        })

    return {
        'order_id': order.id,
        'total_order_amount': float(total_order),
        'total_assigned_amount': float(total_assigned),
        'unassigned_amount': float(total_order - total_assigned),
        'splits': preview_splits,
        'over_allocated': over_allocated,
        'valid': not over_allocated and all(s['vendor_approved'] for s in preview_splits),
    }


def get_order_splits(order_id):
    order = _get_order(order_id)
    return {'order_id': order.id, 'splits': [a.to_dict() for a in order.assignments]}


# --- VENDOR ADMIN ---
def _get_vendor(vendor_id):
    vendor = db.session.get(Vendor, vendor_id)
    if vendor is None:
        raise VendorNotFound(f"Vendor {vendor_id} not found", vendor_id=vendor_id)
    return vendor


def set_vendor_approval(vendor_id, is_approved, notes=None):
    vendor = _get_vendor(vendor_id)
    vendor.is_approved = bool(is_approved)
    if vendor.is_approved:
        title, message = 'Vendor Approval', 'Your vendor account has been approved. You can now receive order assignments.'
    else:
        title, message = 'Vendor Rejection', 'Your vendor account has been rejected. Please contact support for more information.'
    queue_notification(vendor.user_id, 'vendor_approval', title, message,
                       {'is_approved': vendor.is_approved, 'notes': notes})
    db.session.commit()
    return vendor


def set_vendor_commission(vendor_id, commission_rate):
    try:
        rate = Decimal(str(commission_rate))
    except InvalidOperation:
        raise ValidationError("Commission rate must be a number", commission_rate=commission_rate)
    if not rate.is_finite() or rate < 0 or rate > 100:
        raise ValidationError("Commission rate must be between 0 and 100", commission_rate=float(rate))
    vendor = _get_vendor(vendor_id)
    vendor.commission_rate = rate
    db.session.commit()
    return vendor
