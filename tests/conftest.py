import copy
import os
from datetime import datetime

# Must be set before app is imported: it configures the engine at import time
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['RUN_SCHEDULER'] = '0'

import pytest

import platforms
from app import app as flask_app
from fulfillment import Actor
from models import db, Store, Order, OrderItem, Vendor, ORDER_PROCESSING


class FakePlatform:
    """In-memory storefront shared by every client the registry builds during a test."""

    def __init__(self):
        self.orders = []
        self.fetch_errors = []          # raised one per fetch call, before any orders are returned
        self.failing_store_ids = set()  # stores whose every fetch raises AuthError
        self.calls = []
        self.pushes = []
        self.push_ok = True
        self.filter_since = False       # inclusive updated_at >= since, like the real platforms


class FakeClient:
    platform = 'fake'

    def __init__(self, fake, store, **kwargs):
        self.fake = fake
        self.store_id = store.id
        self.store_name = store.name
        self.last_error = None

    def fetch_orders(self, since=None, limit=50):
        from errors import AuthError
        self.fake.calls.append({'store_id': self.store_id, 'since': since, 'limit': limit})
        if self.store_id in self.fake.failing_store_ids:
            raise AuthError("bad token")
        if self.fake.fetch_errors:
            raise self.fake.fetch_errors.pop(0)
        orders = self.fake.orders
        if self.fake.filter_since and since is not None:
            orders = [o for o in orders if o['updated_at'] >= since]
        return copy.deepcopy(orders[:limit])

    def fetch_order_detail(self, external_order_id):
        for o in self.fake.orders:
            if o['external_order_id'] == str(external_order_id):
                return copy.deepcopy(o)
        return None

    def push_tracking_update(self, external_order_id, tracking_number=None, carrier=None):
        self.fake.pushes.append((external_order_id, tracking_number, carrier))
        if not self.fake.push_ok:
            self.last_error = "upstream said no"
        return self.fake.push_ok

    def test_connection(self):
        self.fetch_orders(None, 1)
        return True

    def transform_order(self, payload):
        return copy.deepcopy(payload)


def canonical_order(ext_id, items=None, updated_at=None, total=None, **fields):
    items = items if items is not None else [('SKU-1', 1, '10.00')]
    lines = []
    for index, (sku, qty, price) in enumerate(items, start=1):
        lines.append({
            'external_item_id': f"{ext_id}-{index}",
            'product_name': f"Product {sku}",
            'sku': sku,
            'quantity': qty,
            'unit_price': price,
            'total_price': None if qty is None else str(float(price) * qty),
        })
    data = {
        'external_order_id': str(ext_id),
        'order_number': f"#{ext_id}",
        'customer_email': 'buyer@example.com',
        'customer_name': 'Jane Buyer',
        'total_amount': total if total is not None else sum(float(p) * (q or 0) for _, q, p in items),
        'currency': 'USD',
        'order_status': ORDER_PROCESSING,
        'fulfillment_status': 'unfulfilled',
        'payment_status': 'paid',
        'order_date': datetime(2024, 1, 1, 12, 0),
        'updated_at': updated_at or datetime(2024, 1, 1, 12, 0),
        'items': lines,
    }
    data.update(fields)
    return data


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True, SYNC_MAX_WORKERS=1, SYNC_RETRY_DELAY=0, SYNC_PAGE_SIZE=50)
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def fake_platform(monkeypatch):
    fake = FakePlatform()
    for platform in list(platforms.PLATFORM_CLIENTS):
        monkeypatch.setitem(platforms.PLATFORM_CLIENTS, platform,
                            lambda store, _fake=fake, **kwargs: FakeClient(_fake, store, **kwargs))
    return fake


@pytest.fixture
def make_store(app):
    def _make(name='Test Store', platform='shopify', **fields):
        fields.setdefault('base_url', 'https://test-store.myshopify.com')
        fields.setdefault('api_credentials', {'access_token': 'shpat_test'})
        store = Store(name=name, platform=platform, **fields)
        db.session.add(store)
        db.session.commit()
        return store
    return _make


@pytest.fixture
def make_vendor(app):
    counter = {'n': 0}

    def _make(commission_rate=10, is_approved=True, company_name=None, user_id=None):
        counter['n'] += 1
        vendor = Vendor(company_name=company_name or f"Vendor {counter['n']}", commission_rate=commission_rate,
                        is_approved=is_approved, user_id=user_id or 100 + counter['n'])
        db.session.add(vendor)
        db.session.commit()
        return vendor
    return _make


@pytest.fixture
def make_order(make_store):
    """Order with items given as (sku, quantity, unit_price)."""
    def _make(items=(('SKU-1', 1, '10.00'),), total=None, store=None, external_order_id='1001'):
        store = store or make_store()
        order = Order(store_id=store.id, external_order_id=external_order_id, order_number=f"#{external_order_id}",
                      order_status=ORDER_PROCESSING,
                      total_amount=total if total is not None else sum(float(p) * q for _, q, p in items))
        for index, (sku, qty, price) in enumerate(items, start=1):
            order.items.append(OrderItem(external_item_id=f"{external_order_id}-{index}", sku=sku,
                                         product_name=f"Product {sku}", quantity=qty, unit_price=price,
                                         total_price=float(price) * qty))
        db.session.add(order)
        db.session.commit()
        return order
    return _make


@pytest.fixture
def operator():
    return Actor(1, 'admin')


def vendor_actor(vendor):
    return Actor(vendor.user_id, 'vendor')
