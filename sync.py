"""
Store -> local order sync.

Policy is at-least-once: the watermark advances after every fetched order
was attempted, failed ones included. That is only safe because save_order is
an idempotent upsert on (store_id, external_order_id) plus a full item
replace; keep the two together. A full batch whose newest change is still on
the watermark is widened within the run until it comes back short.
"""
import concurrent.futures
import time

from flask import current_app
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite

from errors import StoreNotFound, PlatformError, ConnectorError
from helpers import get_config, log_event, to_money
from models import (db, Store, Order, OrderItem, OrderItemAssignment, VendorAssignment, utcnow,
                    ASSIGNMENT_CANCELLED)
from platforms import get_platform_client

# Canonical order keys written to the orders table on every sync
ORDER_FIELDS = (
    'order_number', 'customer_email', 'customer_name', 'customer_phone', 'billing_address',
    'shipping_address', 'total_amount', 'currency', 'order_status', 'fulfillment_status',
    'payment_status', 'notes', 'tags', 'order_date',
)


def _load_store(store_id, active_only=True):
    store = db.session.get(Store, store_id)
    if not store or (active_only and not store.is_active):
        raise StoreNotFound(f"Store {store_id} not found or inactive", store_id=store_id)
    return store


def fetch_with_backoff(client, since, limit, retries=3, delay=2.0):
    """Retries RateLimited / TransientNetworkError; auth and scope errors go straight up."""
    attempt = 0
    while True:
        try:
            return client.fetch_orders(since, limit)
        except PlatformError as e:
            attempt += 1
            if not e.retryable or attempt > retries:
                raise
            wait = getattr(e, 'retry_after', None) or delay
            print(f"{client.platform} fetch failed (attempt {attempt}/{retries}), retrying in {wait}s: {e}")
            time.sleep(wait)
            delay *= 2


def sync_store(store_id):
    store = _load_store(store_id)
    store_name = store.name
    client = get_platform_client(store)

    since = store.last_sync_at
    started_at = utcnow()
    page_size = int(get_config(store.id, 'sync_page_size', current_app.config.get('SYNC_PAGE_SIZE', 50)))
    retries = int(get_config(store.id, 'sync_max_retries', current_app.config.get('SYNC_MAX_RETRIES', 3)))
    delay = float(get_config(store.id, 'sync_retry_delay', current_app.config.get('SYNC_RETRY_DELAY', 2.0)))

    log_event('Order Sync', 'Info', f"Syncing {store_name} ({store.platform}) - Last sync: {since}", store_id=store_id)
    limit = page_size
    try:
        while True:
            orders = fetch_with_backoff(client, since, limit, retries=retries, delay=delay)
            if not _stalled(orders, limit, since):
                break
            # Platforms filter "modified since" inclusively, so a full batch tied
            # on the watermark would come back unchanged next run
            limit *= 2
    except PlatformError as e:
        # Nothing was attempted: the watermark stays where it is
        log_event('Order Sync', 'Error', f"Failed to fetch orders from {store_name}: {e}", store_id=store_id)
        raise

    synced = 0
    errors = []
    for data in orders:
        ext_id = data.get('external_order_id')
        try:
            save_order(store_id, data)
            db.session.commit()
            synced += 1
        except Exception as e:
            db.session.rollback()
            errors.append({'order_id': ext_id, 'error': str(e)})
            log_event('Order Sync', 'Error', f"Error saving order {ext_id}: {e}", store_id=store_id)

    store = db.session.get(Store, store_id)
    store.last_sync_at = _next_watermark(orders, limit, started_at)
    db.session.commit()

    status = 'Success' if not errors else 'Warning'
    log_event('Order Sync', status, f"Synced {synced}/{len(orders)} orders from {store_name}", store_id=store_id)
    return {
        'success': True,
        'store_id': store_id,
        'store_name': store_name,
        'synced_orders': synced,
        'total_orders': len(orders),
        'errors': errors,
        'last_sync_at': store.last_sync_at.isoformat(),
    }


def _next_watermark(orders, page_size, started_at):
    # A full batch means more is waiting upstream: resume from the newest
    # modification time seen instead of jumping to "now".
    if len(orders) >= page_size:
        seen = [o['updated_at'] for o in orders if o.get('updated_at')]
        if seen:
            return min(max(seen), started_at)
    return started_at


def _stalled(orders, limit, since):
    if since is None or len(orders) < limit:
        return False
    seen = [o['updated_at'] for o in orders if o.get('updated_at')]
    return bool(seen) and max(seen) <= since


def sync_all_stores():
    store_ids = [s.id for s in Store.query.filter_by(is_active=True, sync_enabled=True).order_by(Store.id)]
    workers = int(current_app.config.get('SYNC_MAX_WORKERS', 1))
    if workers <= 1 or len(store_ids) <= 1:
        return [_sync_isolated(sid) for sid in store_ids]

    app = current_app._get_current_object()

    def run(sid):
        with app.app_context():
            return _sync_isolated(sid)

    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(run, store_ids))


def _sync_isolated(store_id):
    """One store's failure never stops the others."""
    try:
        return sync_store(store_id)
    except Exception as e:
        db.session.rollback()
        result = {'success': False, 'store_id': store_id, 'error': str(e),
                  'synced_orders': 0, 'total_orders': 0, 'errors': []}
        if isinstance(e, ConnectorError):
            result['error_code'] = e.code
        return result


def ingest_order_payload(store_id, payload):
    """Upserts one native order pushed by a platform webhook. The watermark is untouched."""
    store = _load_store(store_id)
    client = get_platform_client(store)
    data = client.transform_order(payload)
    try:
        order = save_order(store.id, data)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        log_event('Order Webhook', 'Error', f"Error saving order {data.get('external_order_id')}: {e}", store_id=store.id)
        raise
    log_event('Order Webhook', 'Success', f"Order {order.order_number} received from {store.name}", store_id=store.id)
    return order


def check_store_connection(store_id):
    store = _load_store(store_id, active_only=False)
    client = get_platform_client(store)
    client.test_connection()
    log_event('System', 'Success', f"Connection to {store.name} OK", store_id=store.id)
    return {'success': True, 'store_id': store.id, 'platform': store.platform}


# --- PERSISTENCE ---
def save_order(store_id, data):
    """
    Upserts one canonical order and replaces its items.

    Adds to the session without committing, so the caller's commit makes the
    order header and its full item set visible together.
    """
    ext_id = str(data['external_order_id'])
    values = {field: data.get(field) for field in ORDER_FIELDS}
    values['total_amount'] = to_money(values['total_amount'])
    values['store_id'] = store_id
    values['external_order_id'] = ext_id

    existing = Order.query.filter_by(store_id=store_id, external_order_id=ext_id).first()
    if existing is not None and any(a.status != ASSIGNMENT_CANCELLED for a in existing.assignments):
        # Local fulfillment owns the status once vendors are on it
        values['order_status'] = existing.order_status

    _upsert_order(values)
    order = db.session.execute(
        select(Order).filter_by(store_id=store_id, external_order_id=ext_id)
        .execution_options(populate_existing=True)
    ).scalar_one()
    _replace_items(order, data.get('items') or [])
    return order


def _upsert_order(values):
    dialect = db.engine.dialect.name
    if dialect == 'postgresql':
        insert = postgresql.insert
    elif dialect == 'sqlite':
        insert = sqlite.insert
    else:
        return _merge_order(values)

    now = utcnow()
    stmt = insert(Order.__table__).values(created_at=now, updated_at=now, **values)
    changes = {k: stmt.excluded[k] for k in values if k not in ('store_id', 'external_order_id')}
    changes['updated_at'] = now
    stmt = stmt.on_conflict_do_update(index_elements=['store_id', 'external_order_id'], set_=changes)
    db.session.execute(stmt)


def _merge_order(values):
    order = Order.query.filter_by(store_id=values['store_id'], external_order_id=values['external_order_id']).first()
    if order is None:
        order = Order(store_id=values['store_id'], external_order_id=values['external_order_id'])
        db.session.add(order)
    for key, value in values.items():
        setattr(order, key, value)
    db.session.flush()


def _replace_items(order, items):
    allocations = (OrderItemAssignment.query.join(VendorAssignment)
                   .filter(VendorAssignment.order_id == order.id).all())
    for allocation in allocations:
        allocation.order_item_id = None
    db.session.flush()

    order.items.clear()
    db.session.flush()

    new_items = []
    for it in items:
        quantity = it.get('quantity')
        if quantity is None or int(quantity) < 0:
            raise ValueError(f"Item {it.get('external_item_id')} has invalid quantity {quantity!r}")
        new_items.append(OrderItem(
            external_item_id=str(it.get('external_item_id')),
            product_name=it.get('product_name'),
            sku=it.get('sku'),
            quantity=int(quantity),
            unit_price=to_money(it.get('unit_price')),
            total_price=to_money(it.get('total_price')),
            variant_title=it.get('variant_title'),
            product_data=it.get('product_data'),
        ))
    order.items.extend(new_items)
    db.session.flush()

    by_external_id = {i.external_item_id: i.id for i in new_items}
    for allocation in allocations:
        allocation.order_item_id = by_external_id.get(allocation.external_item_id)
