import os
import hmac
import hashlib
import base64
import ssl
import threading
import time
from datetime import timedelta

import schedule
from flask import Flask, request, jsonify

from models import db, Store, Order, Vendor, SyncLog, OrderStatusHistory, utcnow
from errors import ConnectorError, Forbidden, StoreNotFound, OrderNotFound, ValidationError
from helpers import get_config, set_config, log_event
from fulfillment import Actor, transition, authorize_order
from sync import sync_store, sync_all_stores, check_store_connection, ingest_order_payload
from assignment import (assign_full, split_assign, preview_split, get_order_splits, set_vendor_approval,
                        set_vendor_commission)
from tracking import record_tracking, update_tracking, get_order_tracking
from shopify_client import normalize_shop_domain
from reports import list_orders, vendor_metrics

app = Flask(__name__)

# --- CONFIGURATION ---
database_url = os.getenv('DATABASE_URL', 'sqlite:///local.db')
if database_url:
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+pg8000://", 1)
    elif database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+pg8000://", 1)

app.config['SQLALCHEMY_DATABASE_URI'] = database_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['PLATFORM_TIMEOUT'] = float(os.getenv('PLATFORM_TIMEOUT', '30'))
app.config['SYNC_INTERVAL_MINUTES'] = int(os.getenv('SYNC_INTERVAL_MINUTES', '15'))
app.config['SYNC_MAX_WORKERS'] = int(os.getenv('SYNC_MAX_WORKERS', '4'))
app.config['SYNC_PAGE_SIZE'] = int(os.getenv('SYNC_PAGE_SIZE', '50'))
app.config['SYNC_MAX_RETRIES'] = int(os.getenv('SYNC_MAX_RETRIES', '3'))
app.config['SYNC_RETRY_DELAY'] = float(os.getenv('SYNC_RETRY_DELAY', '2'))
app.config['LOG_RETENTION_DAYS'] = int(os.getenv('LOG_RETENTION_DAYS', '14'))

# --- SSL FOR HOSTED POSTGRES (pg8000 takes an ssl_context) ---
if database_url.startswith("postgresql+pg8000://") and os.getenv('DB_SSL', '1') == '1':
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        "connect_args": {"ssl_context": ssl.create_default_context()}
    }

SHOPIFY_API_SECRET = os.getenv('SHOPIFY_API_SECRET')

# Per-store settings an operator may change through the API
STORE_SETTINGS = ('sync_page_size', 'sync_max_retries', 'sync_retry_delay', 'request_interval')

db.init_app(app)

# --- DB INIT ---
with app.app_context():
    try:
        db.create_all()
        print("Database tables created/verified.")
    except Exception as e:
        print(f"CRITICAL DB INIT ERROR: {e}")


# --- HELPERS ---
@app.errorhandler(ConnectorError)
def handle_connector_error(e):
    return jsonify(e.to_dict()), e.http_status


def current_actor():
    return Actor.from_headers(request.headers)


def require_operator():
    actor = current_actor()
    if not actor.is_operator:
        raise Forbidden("Operator role required")
    return actor


def visible_order(order_id):
    order = db.session.get(Order, order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
    authorize_order(order, current_actor())
    return order


def request_json():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON object body expected")
    return data


def verify_shopify(data, hmac_header, secret):
    if not secret:
        return False
    if not hmac_header:
        return False
    digest = hmac.new(secret.encode('utf-8'), data, hashlib.sha256).digest()
    return hmac.compare_digest(base64.b64encode(digest).decode(), hmac_header)


# --- STORES / SYNC ---
@app.route('/stores/<int:store_id>/sync', methods=['POST'])
def api_sync_store(store_id):
    require_operator()
    return jsonify(sync_store(store_id))


@app.route('/stores/sync-all', methods=['POST'])
def api_sync_all():
    require_operator()
    results = sync_all_stores()
    return jsonify({
        'success': all(r.get('success') for r in results),
        'stores': len(results),
        'synced_orders': sum(r.get('synced_orders', 0) for r in results),
        'results': results,
    })


@app.route('/stores/<int:store_id>/test', methods=['POST'])
def api_test_store(store_id):
    require_operator()
    return jsonify(check_store_connection(store_id))


@app.route('/stores/<int:store_id>/settings', methods=['GET', 'POST'])
def api_store_settings(store_id):
    require_operator()
    if db.session.get(Store, store_id) is None:
        raise StoreNotFound(f"Store {store_id} not found", store_id=store_id)

    if request.method == 'POST':
        data = request_json()
        unknown = [k for k in data if k not in STORE_SETTINGS]
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(unknown)}", allowed=list(STORE_SETTINGS))
        for key in STORE_SETTINGS:
            if key in data:
                if not set_config(store_id, key, data[key]):
                    return jsonify({"message": f"Save Error: {key}"}), 500
        log_event('System', 'Info', f"Settings updated: {', '.join(sorted(data))}", store_id=store_id)

    return jsonify({key: get_config(store_id, key) for key in STORE_SETTINGS})


@app.route('/webhook/orders', methods=['POST'])
@app.route('/webhook/orders/updated', methods=['POST'])
def order_webhook():
    """Shopify orders/create + orders/updated. Same upsert path as the polling sync."""
    shop_domain = normalize_shop_domain(request.headers.get('X-Shopify-Shop-Domain'))
    store = None
    for candidate in Store.query.filter_by(platform='shopify', is_active=True):
        creds = candidate.api_credentials or {}
        if shop_domain and shop_domain == normalize_shop_domain(creds.get('shop_url') or candidate.base_url):
            store = candidate
            break
    if store is None:
        return "Unknown shop", 404

    secret = (store.api_credentials or {}).get('webhook_secret') or SHOPIFY_API_SECRET
    if not verify_shopify(request.get_data(), request.headers.get('X-Shopify-Hmac-Sha256'), secret):
        return "Unauthorized", 401

    ingest_order_payload(store.id, request_json())
    return "Received", 200


# --- ORDERS / ASSIGNMENT ---
@app.route('/orders', methods=['GET'])
def api_list_orders():
    return jsonify(list_orders(request.args, current_actor()))


@app.route('/orders/<int:order_id>', methods=['GET'])
def api_get_order(order_id):
    order = visible_order(order_id)
    data = order.to_dict()
    data['assignments'] = [a.to_dict() for a in order.assignments]
    data['history'] = [h.to_dict() for h in OrderStatusHistory.query.filter_by(order_id=order.id)
                       .order_by(OrderStatusHistory.id)]
    return jsonify(data)


@app.route('/orders/<int:order_id>/assign', methods=['POST'])
def api_assign_order(order_id):
    actor = require_operator()
    data = request_json()
    if not data.get('vendor_id'):
        raise ValidationError("vendor_id is required")
    assignment = assign_full(order_id, data['vendor_id'], assigned_by=actor.id, notes=data.get('notes'))
    return jsonify({'message': 'Order assigned successfully', 'assignment': assignment.to_dict()}), 201


@app.route('/orders/<int:order_id>/split', methods=['POST'])
def api_split_order(order_id):
    actor = require_operator()
    data = request_json()
    assignments = split_assign(order_id, data.get('splits'), assigned_by=actor.id)
    return jsonify({
        'message': 'Order split successfully',
        'assignments': [a.to_dict() for a in assignments],
        'total_assigned_amount': sum(float(a.assigned_amount) for a in assignments),
    }), 201


@app.route('/orders/<int:order_id>/split-preview', methods=['POST'])
def api_split_preview(order_id):
    require_operator()
    data = request_json()
    return jsonify(preview_split(order_id, data.get('splits')))


@app.route('/orders/<int:order_id>/splits', methods=['GET'])
def api_order_splits(order_id):
    visible_order(order_id)
    return jsonify(get_order_splits(order_id))


# --- FULFILLMENT ---
@app.route('/assignments/<int:assignment_id>/status', methods=['PUT'])
def api_assignment_status(assignment_id):
    data = request_json()
    if not data.get('status'):
        raise ValidationError("status is required")
    assignment = transition(assignment_id, data['status'], current_actor(), notes=data.get('notes'))
    return jsonify({'message': 'Assignment status updated', 'assignment': assignment.to_dict(),
                    'order_status': assignment.order.order_status})


@app.route('/tracking', methods=['POST'])
def api_record_tracking():
    data = request_json()
    for field in ('order_id', 'vendor_assignment_id', 'tracking_number', 'carrier'):
        if not data.get(field):
            raise ValidationError(f"{field} is required", field=field)
    tracking = record_tracking(data['order_id'], data['vendor_assignment_id'], data['tracking_number'],
                               data['carrier'], current_actor(), tracking_url=data.get('tracking_url'),
                               notes=data.get('notes'))
    return jsonify({'message': 'Tracking information added', 'tracking': tracking.to_dict()}), 201


@app.route('/tracking/<int:tracking_id>', methods=['PUT'])
def api_update_tracking(tracking_id):
    data = request_json()
    tracking = update_tracking(tracking_id, data.get('status'), current_actor(),
                               delivered_date=data.get('delivered_date'), notes=data.get('notes'))
    return jsonify({'message': 'Tracking updated', 'tracking': tracking.to_dict()})


@app.route('/tracking/order/<int:order_id>', methods=['GET'])
def api_order_tracking(order_id):
    visible_order(order_id)
    return jsonify(get_order_tracking(order_id))


# --- VENDOR ADMIN ---
@app.route('/vendors/<int:vendor_id>/approval', methods=['PUT'])
def api_vendor_approval(vendor_id):
    require_operator()
    data = request_json()
    if 'is_approved' not in data:
        raise ValidationError("is_approved is required")
    vendor = set_vendor_approval(vendor_id, data['is_approved'], notes=data.get('notes'))
    status = 'approved' if vendor.is_approved else 'rejected'
    return jsonify({'message': f"Vendor {status} successfully", 'vendor': vendor.to_dict()})


@app.route('/vendors/<int:vendor_id>/commission', methods=['PUT'])
def api_vendor_commission(vendor_id):
    require_operator()
    data = request_json()
    vendor = set_vendor_commission(vendor_id, data.get('commission_rate'))
    return jsonify({'message': 'Commission rate updated successfully', 'vendor': vendor.to_dict()})


@app.route('/vendors/<int:vendor_id>/metrics', methods=['GET'])
def api_vendor_metrics(vendor_id):
    require_operator()
    return jsonify(vendor_metrics(vendor_id, request.args.get('period', 30)))


@app.route('/vendors', methods=['GET'])
def api_list_vendors():
    query = Vendor.query.order_by(Vendor.company_name)
    if request.args.get('approved') == 'true':
        query = query.filter_by(is_approved=True)
    return jsonify([v.to_dict() for v in query])


# --- LOGS ---
@app.route('/api/logs/live', methods=['GET'])
def api_live_logs():
    store_id = request.args.get('store_id', type=int)
    try:
        query = SyncLog.query
        if store_id:
            # The store's own events plus system-wide ones
            query = query.filter((SyncLog.store_id == store_id) | (SyncLog.store_id.is_(None)))
        logs = query.order_by(SyncLog.timestamp.desc(), SyncLog.id.desc()).limit(50).all()

        data = []
        for log in logs:
            msg_type = 'info'
            status_lower = (log.status or '').lower()
            if 'error' in status_lower or 'fail' in status_lower: msg_type = 'error'
            elif 'success' in status_lower: msg_type = 'success'
            elif 'warning' in status_lower: msg_type = 'warning'

            iso_ts = log.timestamp.isoformat()
            if not iso_ts.endswith('Z'): iso_ts += 'Z'

            data.append({
                'id': log.id,
                'store_id': log.store_id,
                'timestamp': iso_ts,
                'message': f"[{log.entity}] {log.message}",
                'type': msg_type,
                'details': log.status
            })
        return jsonify(data)
    except Exception as e:
        print(f"Log Read Error: {e}")
        return jsonify([])


# --- SCHEDULER ---
def cleanup_old_logs():
    """Deletes logs older than LOG_RETENTION_DAYS to keep DB light."""
    with app.app_context():
        cutoff = utcnow() - timedelta(days=app.config['LOG_RETENTION_DAYS'])
        try:
            deleted = SyncLog.query.filter(SyncLog.timestamp < cutoff).delete()
            db.session.commit()
            return deleted
        except Exception as e:
            db.session.rollback()
            print(f"Maintenance Error: {e}")
            return 0


def scheduled_order_sync():
    with app.app_context():
        results = sync_all_stores()
        failed = [r for r in results if not r.get('success')]
        for r in failed:
            log_event('Order Sync', 'Error', f"Scheduled sync failed: {r.get('error')}", store_id=r.get('store_id'))
        print(f"Scheduled sync: {len(results) - len(failed)}/{len(results)} stores OK")


def run_schedule():
    schedule.every(app.config['SYNC_INTERVAL_MINUTES']).minutes.do(
        lambda: threading.Thread(target=scheduled_order_sync).start())

    # Global maintenance (once per day)
    schedule.every().day.at("06:00").do(lambda: threading.Thread(target=cleanup_old_logs).start())

    while True:
        schedule.run_pending()
        time.sleep(1)


# --- SYSTEM STARTUP ---
if os.getenv('RUN_SCHEDULER', '1') == '1':
    print("**************************************************")
    print(">>> SYSTEM STARTUP: ORDER CONNECTOR SCHEDULER <<<")
    print("**************************************************")

    # Start scheduler thread
    t = threading.Thread(target=run_schedule, daemon=True)
    t.start()

if __name__ == '__main__':
    app.run(debug=True)
