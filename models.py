from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# --- ENUMS (plain strings in the DB) ---
PLATFORMS = ('shopify', 'bigcommerce', 'woocommerce')

# Canonical upstream order statuses produced by the platform clients
ORDER_DRAFT = 'draft'
ORDER_PROCESSING = 'processing'
ORDER_SHIPPED = 'shipped'
ORDER_CANCELLED = 'cancelled'
# Locally derived from vendor assignments
ORDER_PENDING = 'pending'
ORDER_ASSIGNED = 'assigned'
ORDER_COMPLETED = 'completed'

ASSIGNMENT_ASSIGNED = 'assigned'
ASSIGNMENT_ACCEPTED = 'accepted'
ASSIGNMENT_IN_PROGRESS = 'in_progress'
ASSIGNMENT_SHIPPED = 'shipped'
ASSIGNMENT_COMPLETED = 'completed'
ASSIGNMENT_CANCELLED = 'cancelled'

TRACKING_STATUSES = ('shipped', 'in_transit', 'delivered', 'exception')


class Store(db.Model):
    __tablename__ = 'stores'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    platform = db.Column(db.String(20), nullable=False)  # shopify | bigcommerce | woocommerce
    base_url = db.Column(db.String(255))
    api_credentials = db.Column(db.JSON, default=dict)  # opaque, platform specific
    is_active = db.Column(db.Boolean, default=True)
    sync_enabled = db.Column(db.Boolean, default=True)
    last_sync_at = db.Column(db.DateTime, nullable=True)  # watermark
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    orders = db.relationship('Order', back_populates='store', lazy='dynamic')

    def to_dict(self):
        return {
            'id': self.id, 'name': self.name, 'platform': self.platform, 'base_url': self.base_url,
            'is_active': self.is_active, 'sync_enabled': self.sync_enabled,
            'last_sync_at': _iso(self.last_sync_at),
        }


class Order(db.Model):
    __tablename__ = 'orders'
    # The conflict target of the sync upsert. Do not drop.
    __table_args__ = (db.UniqueConstraint('store_id', 'external_order_id', name='uq_orders_store_external'),)

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey('stores.id'), nullable=False, index=True)
    external_order_id = db.Column(db.String(64), nullable=False)
    order_number = db.Column(db.String(64))
    customer_email = db.Column(db.String(255))
    customer_name = db.Column(db.String(255))
    customer_phone = db.Column(db.String(64))
    billing_address = db.Column(db.JSON)
    shipping_address = db.Column(db.JSON)
    total_amount = db.Column(db.Numeric(12, 2), default=0)
    currency = db.Column(db.String(8), default='USD')
    order_status = db.Column(db.String(20), default=ORDER_PROCESSING, index=True)
    payment_status = db.Column(db.String(50))
    fulfillment_status = db.Column(db.String(50))
    order_date = db.Column(db.DateTime)
    notes = db.Column(db.Text)
    tags = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    store = db.relationship('Store', back_populates='orders')
    items = db.relationship('OrderItem', back_populates='order', order_by='OrderItem.id',
                            cascade='all, delete-orphan')
    assignments = db.relationship('VendorAssignment', back_populates='order', order_by='VendorAssignment.id',
                                  cascade='all, delete-orphan')

    def to_dict(self, with_items=True):
        data = {
            'id': self.id, 'store_id': self.store_id, 'external_order_id': self.external_order_id,
            'order_number': self.order_number, 'customer_email': self.customer_email,
            'customer_name': self.customer_name, 'customer_phone': self.customer_phone,
            'billing_address': self.billing_address, 'shipping_address': self.shipping_address,
            'total_amount': _money(self.total_amount), 'currency': self.currency,
            'order_status': self.order_status, 'payment_status': self.payment_status,
            'fulfillment_status': self.fulfillment_status, 'order_date': _iso(self.order_date),
            'notes': self.notes, 'tags': self.tags,
        }
        if with_items:
            data['items'] = [i.to_dict() for i in self.items]
        return data


class OrderItem(db.Model):
    __tablename__ = 'order_items'
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)
    external_item_id = db.Column(db.String(64))
    product_name = db.Column(db.String(255))
    sku = db.Column(db.String(100), index=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_price = db.Column(db.Numeric(12, 2), default=0)
    variant_title = db.Column(db.String(255))
    product_data = db.Column(db.JSON)

    order = db.relationship('Order', back_populates='items')

    def to_dict(self):
        return {
            'id': self.id, 'external_item_id': self.external_item_id, 'product_name': self.product_name,
            'sku': self.sku, 'quantity': self.quantity, 'unit_price': _money(self.unit_price),
            'total_price': _money(self.total_price), 'variant_title': self.variant_title,
        }


class Vendor(db.Model):
    __tablename__ = 'vendors'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)  # owning user, receives notifications
    company_name = db.Column(db.String(255))
    commission_rate = db.Column(db.Numeric(5, 2), default=0)  # percent, 0-100
    is_approved = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'id': self.id, 'user_id': self.user_id, 'company_name': self.company_name,
            'commission_rate': _money(self.commission_rate), 'is_approved': self.is_approved,
        }


class VendorAssignment(db.Model):
    __tablename__ = 'vendor_assignments'
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey('vendors.id'), nullable=False, index=True)
    assignment_type = db.Column(db.String(10), nullable=False, default='full')  # full | partial
    assigned_amount = db.Column(db.Numeric(12, 2), default=0)
    commission_amount = db.Column(db.Numeric(12, 2), default=0)
    status = db.Column(db.String(20), nullable=False, default=ASSIGNMENT_ASSIGNED, index=True)
    notes = db.Column(db.Text)
    assigned_by = db.Column(db.Integer)
    assigned_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    order = db.relationship('Order', back_populates='assignments')
    vendor = db.relationship('Vendor')
    item_assignments = db.relationship('OrderItemAssignment', back_populates='vendor_assignment',
                                       order_by='OrderItemAssignment.id', cascade='all, delete-orphan')
    trackings = db.relationship('OrderTracking', back_populates='vendor_assignment',
                                order_by='OrderTracking.id', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id, 'order_id': self.order_id, 'vendor_id': self.vendor_id,
            'company_name': self.vendor.company_name if self.vendor else None,
            'assignment_type': self.assignment_type, 'assigned_amount': _money(self.assigned_amount),
            'commission_amount': _money(self.commission_amount), 'status': self.status,
            'notes': self.notes, 'assigned_by': self.assigned_by, 'assigned_at': _iso(self.assigned_at),
            'assigned_items': [ia.to_dict() for ia in self.item_assignments],
        }


class OrderItemAssignment(db.Model):
    __tablename__ = 'order_item_assignments'
    id = db.Column(db.Integer, primary_key=True)
    vendor_assignment_id = db.Column(db.Integer, db.ForeignKey('vendor_assignments.id'), nullable=False, index=True)
    # Nullable: the item row is swapped out on re-sync, then re-linked by external_item_id
    order_item_id = db.Column(db.Integer, db.ForeignKey('order_items.id'), nullable=True, index=True)
    external_item_id = db.Column(db.String(64))
    quantity = db.Column(db.Integer, nullable=False)
    assigned_amount = db.Column(db.Numeric(12, 2), default=0)

    vendor_assignment = db.relationship('VendorAssignment', back_populates='item_assignments')
    order_item = db.relationship('OrderItem')

    def to_dict(self):
        return {
            'item_id': self.order_item_id, 'external_item_id': self.external_item_id,
            'product_name': self.order_item.product_name if self.order_item else None,
            'sku': self.order_item.sku if self.order_item else None,
            'assigned_quantity': self.quantity, 'assigned_amount': _money(self.assigned_amount),
        }


class OrderStatusHistory(db.Model):
    __tablename__ = 'order_status_history'
    # Append-only audit trail. Rows are never updated or deleted.
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)
    vendor_assignment_id = db.Column(db.Integer, index=True)  # no FK: outlives re-split deletes
    old_status = db.Column(db.String(30))
    new_status = db.Column(db.String(30), nullable=False)
    changed_by = db.Column(db.Integer)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id, 'order_id': self.order_id, 'vendor_assignment_id': self.vendor_assignment_id,
            'old_status': self.old_status, 'new_status': self.new_status, 'changed_by': self.changed_by,
            'notes': self.notes, 'created_at': _iso(self.created_at),
        }


class OrderTracking(db.Model):
    __tablename__ = 'order_tracking'
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)
    vendor_assignment_id = db.Column(db.Integer, db.ForeignKey('vendor_assignments.id'), nullable=False, index=True)
    tracking_number = db.Column(db.String(100))
    carrier = db.Column(db.String(100))
    tracking_url = db.Column(db.String(500))
    shipped_date = db.Column(db.DateTime, default=utcnow)
    delivered_date = db.Column(db.DateTime)
    status = db.Column(db.String(20), default='shipped')
    notes = db.Column(db.Text)
    created_by = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    vendor_assignment = db.relationship('VendorAssignment', back_populates='trackings')

    def to_dict(self):
        return {
            'id': self.id, 'order_id': self.order_id, 'vendor_assignment_id': self.vendor_assignment_id,
            'tracking_number': self.tracking_number, 'carrier': self.carrier, 'tracking_url': self.tracking_url,
            'shipped_date': _iso(self.shipped_date), 'delivered_date': _iso(self.delivered_date),
            'status': self.status, 'notes': self.notes, 'created_by': self.created_by,
        }


class Notification(db.Model):
    __tablename__ = 'notifications'
    # Queue drained by the out-of-process delivery workers (email, Slack, in-app)
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, index=True)
    type = db.Column(db.String(50))
    title = db.Column(db.String(255))
    message = db.Column(db.Text)
    data = db.Column(db.JSON)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)


class SyncLog(db.Model):
    __tablename__ = 'sync_logs'
    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, index=True)  # None for system-wide events
    timestamp = db.Column(db.DateTime, default=utcnow)
    entity = db.Column(db.String(50))
    status = db.Column(db.String(20))
    message = db.Column(db.Text)


class AppSetting(db.Model):
    __tablename__ = 'app_settings'
    # COMPOSITE PRIMARY KEY: Settings are unique PER STORE
    store_id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(50), primary_key=True)
    value = db.Column(db.Text)


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return float(value) if value is not None else None
