from errors import PlatformError
from helpers import to_money, parse_datetime, to_iso_utc
from models import ORDER_DRAFT, ORDER_PROCESSING, ORDER_SHIPPED, ORDER_CANCELLED
from platform_client import PlatformClient, split_name

PAGE_SIZE = 100  # wc/v3 per_page max


class WooCommerceClient(PlatformClient):
    platform = 'woocommerce'
    min_request_interval = 0.25
    status_map = {
        'checkout-draft': ORDER_DRAFT,
        'pending': ORDER_PROCESSING,
        'processing': ORDER_PROCESSING,
        'on-hold': ORDER_PROCESSING,
        'completed': ORDER_SHIPPED,
        'cancelled': ORDER_CANCELLED,
        'refunded': ORDER_CANCELLED,
        'failed': ORDER_CANCELLED,
        'trash': ORDER_CANCELLED,
    }

    def __init__(self, store, **kwargs):
        super().__init__(store, **kwargs)
        creds = self.credentials
        self.session.auth = (creds.get('consumer_key') or '', creds.get('consumer_secret') or '')

    def api_root(self):
        return f"{self.base_url}/wp-json/wc/v3"

    def fetch_orders(self, since=None, limit=50):
        orders = []
        page = 1
        while len(orders) < limit:
            params = {'per_page': min(limit, PAGE_SIZE), 'page': page, 'orderby': 'modified', 'order': 'asc',
                      'dates_are_gmt': 'true'}
            if since:
                params['modified_after'] = to_iso_utc(since)
            batch = self.get_json('/orders', params=params, default=[])
            if not isinstance(batch, list) or not batch:
                break
            orders.extend(self.transform_order(o) for o in batch)
            if len(batch) < params['per_page']:
                break
            page += 1
        return orders[:limit]

    def fetch_order_detail(self, external_order_id):
        order = self.get_json(f"/orders/{external_order_id}", default=None)
        if not order:
            raise PlatformError(f"WooCommerce order {external_order_id} not found")
        return self.transform_order(order)

    def transform_order(self, o):
        billing = o.get('billing') or {}
        status = self.map_status(o.get('status'))
        created = o.get('date_created_gmt')  # wc/v3 sends GMT without an offset

        items = []
        for li in o.get('line_items', []):
            qty = int(li.get('quantity', 0))
            meta = [m for m in (li.get('meta_data') or []) if not str(m.get('key', '')).startswith('_')]
            items.append({
                'external_item_id': str(li['id']),
                'product_name': li.get('name'),
                'sku': li.get('sku'),
                'quantity': qty,
                'unit_price': to_money(li.get('price')),
                'total_price': to_money(li.get('total')),
                'variant_title': ', '.join(f"{m.get('display_key') or m.get('key')}: {m.get('display_value') or m.get('value')}"
                                           for m in meta),
                'product_data': {
                    'product_id': li.get('product_id'),
                    'variation_id': li.get('variation_id'),
                    'meta_data': meta,
                },
            })

        return {
            'external_order_id': str(o['id']),
            'order_number': str(o.get('number') or o['id']),
            'customer_email': billing.get('email'),
            'customer_name': split_name(billing.get('first_name'), billing.get('last_name')),
            'customer_phone': billing.get('phone'),
            'billing_address': o.get('billing'),
            'shipping_address': o.get('shipping'),
            'total_amount': to_money(o.get('total')),
            'currency': o.get('currency') or 'USD',
            'order_status': status,
            'fulfillment_status': 'fulfilled' if status == ORDER_SHIPPED else 'unfulfilled',
            'payment_status': 'paid' if o.get('date_paid_gmt') or o.get('date_paid') else 'pending',
            'notes': o.get('customer_note') or '',
            'tags': '',
            'order_date': parse_datetime(created + 'Z' if created else o.get('date_created')),
            'updated_at': parse_datetime(o['date_modified_gmt'] + 'Z' if o.get('date_modified_gmt') else o.get('date_modified')),
            'items': items,
        }

    def _push_tracking(self, external_order_id, tracking_number, carrier):
        payload = {
            'status': 'completed',
            'meta_data': [
                {'key': '_tracking_number', 'value': tracking_number or ''},
                {'key': '_tracking_carrier', 'value': carrier or ''},
            ],
        }
        self._send('PUT', f"/orders/{external_order_id}", json=payload)
