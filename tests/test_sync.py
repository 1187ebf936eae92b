from datetime import datetime
from decimal import Decimal

import pytest

from conftest import canonical_order
from errors import AuthError, StoreNotFound, TransientNetworkError, RateLimited
from helpers import set_config
from models import db, Order, OrderItem, OrderItemAssignment, Store, SyncLog, ORDER_ASSIGNED
from sync import sync_store, sync_all_stores, save_order, check_store_connection, ingest_order_payload
from assignment import split_assign


def test_sync_persists_orders_and_items(fake_platform, make_store):
    store = make_store()
    fake_platform.orders = [
        canonical_order('1001', items=[('A', 2, '10.00'), ('B', 1, '5.50')]),
        canonical_order('1002'),
    ]

    result = sync_store(store.id)

    assert result['success'] is True
    assert result['synced_orders'] == 2
    assert result['total_orders'] == 2
    assert result['errors'] == []
    order = Order.query.filter_by(store_id=store.id, external_order_id='1001').one()
    assert order.total_amount == Decimal('25.50')
    assert [(i.sku, i.quantity, i.unit_price) for i in order.items] == [('A', 2, Decimal('10.00')),
                                                                         ('B', 1, Decimal('5.50'))]


def test_resync_is_idempotent_and_replaces_items(fake_platform, make_store):
    store = make_store()
    fake_platform.orders = [canonical_order('1001', items=[('A', 2, '10.00'), ('B', 1, '5.00')])]
    sync_store(store.id)

    fake_platform.orders = [canonical_order('1001', items=[('A', 3, '10.00')], customer_name='Renamed')]
    sync_store(store.id)
    sync_store(store.id)

    orders = Order.query.filter_by(store_id=store.id).all()
    assert len(orders) == 1
    assert orders[0].customer_name == 'Renamed'
    assert [(i.sku, i.quantity) for i in orders[0].items] == [('A', 3)]
    assert OrderItem.query.count() == 1


def test_one_bad_order_does_not_stop_the_batch(fake_platform, make_store):
    store = make_store()
    fake_platform.orders = [canonical_order(str(1000 + n)) for n in range(1, 6)]
    fake_platform.orders[2] = canonical_order('1003', items=[('BROKEN', None, '1.00')])

    result = sync_store(store.id)

    assert result['synced_orders'] == 4
    assert result['total_orders'] == 5
    assert [e['order_id'] for e in result['errors']] == ['1003']
    assert Order.query.count() == 4
    assert Order.query.filter_by(external_order_id='1003').first() is None
    assert db.session.get(Store, store.id).last_sync_at is not None
    assert SyncLog.query.filter_by(store_id=store.id, status='Error').count() == 1


def test_auth_error_is_not_retried_and_keeps_watermark(fake_platform, make_store):
    store = make_store()
    fake_platform.fetch_errors = [AuthError("token revoked")]

    with pytest.raises(AuthError):
        sync_store(store.id)

    assert len(fake_platform.calls) == 1
    assert db.session.get(Store, store.id).last_sync_at is None


def test_transient_errors_are_retried(fake_platform, make_store):
    store = make_store()
    fake_platform.orders = [canonical_order('1001')]
    fake_platform.fetch_errors = [TransientNetworkError("timeout"), RateLimited("slow down", retry_after=0)]

    result = sync_store(store.id)

    assert result['synced_orders'] == 1
    assert len(fake_platform.calls) == 3


def test_retries_are_bounded(fake_platform, make_store):
    store = make_store()
    set_config(store.id, 'sync_max_retries', 1)
    fake_platform.fetch_errors = [TransientNetworkError("down"), TransientNetworkError("still down")]

    with pytest.raises(TransientNetworkError):
        sync_store(store.id)

    assert len(fake_platform.calls) == 2
    assert db.session.get(Store, store.id).last_sync_at is None


def test_next_sync_asks_only_for_changes_since_watermark(fake_platform, make_store):
    store = make_store()
    sync_store(store.id)
    watermark = db.session.get(Store, store.id).last_sync_at

    sync_store(store.id)

    assert fake_platform.calls[0]['since'] is None
    assert fake_platform.calls[1]['since'] == watermark


def test_full_batch_resumes_from_newest_update(fake_platform, make_store):
    store = make_store()
    set_config(store.id, 'sync_page_size', 2)
    fake_platform.orders = [
        canonical_order('1001', updated_at=datetime(2024, 3, 1, 8, 0)),
        canonical_order('1002', updated_at=datetime(2024, 3, 1, 9, 30)),
        canonical_order('1003', updated_at=datetime(2024, 3, 1, 10, 0)),
    ]

    result = sync_store(store.id)

    assert result['total_orders'] == 2
    assert fake_platform.calls[0]['limit'] == 2
    assert db.session.get(Store, store.id).last_sync_at == datetime(2024, 3, 1, 9, 30)


def test_full_batch_tied_on_watermark_is_widened(fake_platform, make_store):
    store = make_store()
    set_config(store.id, 'sync_page_size', 2)
    fake_platform.filter_since = True
    tied = datetime(2024, 3, 1, 8, 0)
    fake_platform.orders = [canonical_order(ext_id, updated_at=tied) for ext_id in ('1001', '1002', '1003')]

    sync_store(store.id)
    assert db.session.get(Store, store.id).last_sync_at == tied
    result = sync_store(store.id)

    assert [c['limit'] for c in fake_platform.calls] == [2, 2, 4]
    assert result['total_orders'] == 3
    assert sorted(o.external_order_id for o in Order.query.all()) == ['1001', '1002', '1003']
    assert db.session.get(Store, store.id).last_sync_at > tied


def test_inactive_store_is_not_synced(fake_platform, make_store):
    store = make_store(is_active=False)

    with pytest.raises(StoreNotFound):
        sync_store(store.id)
    assert fake_platform.calls == []


def test_sync_all_isolates_failing_store(fake_platform, make_store):
    good = make_store(name='Good')
    bad = make_store(name='Bad', platform='woocommerce')
    make_store(name='Paused', sync_enabled=False)
    fake_platform.orders = [canonical_order('1001')]
    fake_platform.failing_store_ids = {bad.id}

    results = {r['store_id']: r for r in sync_all_stores()}

    assert set(results) == {good.id, bad.id}
    assert results[good.id]['success'] is True
    assert results[good.id]['synced_orders'] == 1
    assert results[bad.id]['success'] is False
    assert results[bad.id]['error_code'] == 'auth_error'


def test_resync_keeps_assigned_status_and_relinks_allocations(fake_platform, make_store, make_vendor):
    store = make_store()
    vendor = make_vendor()
    fake_platform.orders = [canonical_order('1001', items=[('A', 2, '10.00'), ('B', 1, '5.00')])]
    sync_store(store.id)
    order = Order.query.filter_by(external_order_id='1001').one()
    split_assign(order.id, [{'vendor_id': vendor.id, 'items': [{'item_id': order.items[0].id, 'quantity': 2}]}])

    fake_platform.orders = [canonical_order('1001', items=[('A', 2, '10.00'), ('B', 1, '5.00')],
                                            customer_email='new@example.com')]
    sync_store(store.id)

    order = Order.query.filter_by(external_order_id='1001').one()
    assert order.order_status == ORDER_ASSIGNED
    assert order.customer_email == 'new@example.com'
    allocation = OrderItemAssignment.query.one()
    assert allocation.external_item_id == '1001-1'
    assert allocation.order_item_id == order.items[0].id
    assert allocation.order_item.sku == 'A'


def test_save_order_rejects_negative_quantity(make_store):
    store = make_store()
    with pytest.raises(ValueError):
        save_order(store.id, canonical_order('1001', items=[('A', -1, '10.00')]))
    db.session.rollback()


def test_webhook_payload_uses_same_upsert(fake_platform, make_store):
    store = make_store()
    ingest_order_payload(store.id, canonical_order('1001'))
    ingest_order_payload(store.id, canonical_order('1001', items=[('A', 4, '1.00')]))

    order = Order.query.filter_by(store_id=store.id).one()
    assert [(i.sku, i.quantity) for i in order.items] == [('A', 4)]
    assert db.session.get(Store, store.id).last_sync_at is None


def test_check_store_connection(fake_platform, make_store):
    store = make_store()
    assert check_store_connection(store.id)['success'] is True

    fake_platform.failing_store_ids = {store.id}
    with pytest.raises(AuthError):
        check_store_connection(store.id)
