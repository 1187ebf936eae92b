from errors import PlatformError
from helpers import to_money, parse_datetime, to_iso_utc
from models import ORDER_DRAFT, ORDER_PROCESSING, ORDER_SHIPPED, ORDER_CANCELLED
from platform_client import PlatformClient, split_name

BC_BASE_URL = "https://api.bigcommerce.com/stores"
PAGE_SIZE = 250


class BigCommerceClient(PlatformClient):
    platform = 'bigcommerce'
    min_request_interval = 0.1
    # BigCommerce status_id -> canonical
    status_map = {
        0: ORDER_DRAFT,         # incomplete
        1: ORDER_PROCESSING,    # pending
        2: ORDER_SHIPPED,       # shipped
        3: ORDER_SHIPPED,       # partially shipped
        4: ORDER_SHIPPED,       # refunded
        5: ORDER_CANCELLED,     # cancelled
        6: ORDER_CANCELLED,     # declined
        7: ORDER_PROCESSING,    # awaiting payment
        8: ORDER_PROCESSING,    # awaiting pickup
        9: ORDER_PROCESSING,    # awaiting shipment
        10: ORDER_SHIPPED,      # completed
        11: ORDER_PROCESSING,   # awaiting fulfillment
        12: ORDER_PROCESSING,   # manual verification required
        13: ORDER_PROCESSING,   # disputed
        14: ORDER_SHIPPED,      # partially refunded
    }

    def __init__(self, store, **kwargs):
        super().__init__(store, **kwargs)
        creds = self.credentials
        self.store_hash = creds.get('store_hash') or creds.get('BC_STORE_HASH')
        token = creds.get('access_token') or creds.get('BC_ACCESS_TOKEN') or ''
        self.session.headers['X-Auth-Token'] = token

    def api_root(self):
        return f"{BC_BASE_URL}/{self.store_hash}/v2"

    def map_status(self, native):
        try:
            native = int(native)
        except (TypeError, ValueError):
            pass
        return super().map_status(native)

    def fetch_orders(self, since=None, limit=50):
        orders = []
        page = 1
        while len(orders) < limit:
            params = {'limit': min(limit, PAGE_SIZE), 'page': page, 'sort': 'date_modified:asc'}
            if since:
                params['min_date_modified'] = to_iso_utc(since)
            batch = self.get_json('/orders', params=params, default=[])
            if not isinstance(batch, list) or not batch:
                break
            for o in batch:
                if len(orders) >= limit:
                    break
                # The list endpoint has no line items; one paced detail call per order
                products = self.get_json(f"/orders/{o['id']}/products", default=[]) or []
                orders.append(self.transform_order(o, products))
            if len(batch) < params['limit']:
                break
            page += 1
        return orders

    def fetch_order_detail(self, external_order_id):
        order = self.get_json(f"/orders/{external_order_id}", default=None)
        if not order:
            raise PlatformError(f"BigCommerce order {external_order_id} not found")
        products = self.get_json(f"/orders/{external_order_id}/products", default=[]) or []
        return self.transform_order(order, products)

    def transform_order(self, o, products=()):
        billing = o.get('billing_address') or {}
        shipping = o.get('shipping_addresses')
        if isinstance(shipping, list):
            shipping = shipping[0] if shipping else None
        elif not isinstance(shipping, dict) or 'resource' in shipping or 'url' in shipping:
            shipping = None  # v2 returns a resource link here, not the address

        status = self.map_status(o.get('status_id'))
        items = []
        for p in products:
            options = p.get('product_options') or []
            items.append({
                'external_item_id': str(p['id']),
                'product_name': p.get('name'),
                'sku': p.get('sku'),
                'quantity': int(p.get('quantity', 0)),
                'unit_price': to_money(p.get('base_price') or p.get('price_inc_tax') or 0),
                'total_price': to_money(p.get('total_inc_tax') or p.get('total_ex_tax') or 0),
                'variant_title': ', '.join(f"{opt.get('display_name')}: {opt.get('display_value')}" for opt in options),
                'product_data': {
                    'product_id': p.get('product_id'),
                    'order_address_id': p.get('order_address_id'),
                    'type': p.get('type'),
                    'product_options': options,
                },
            })

        return {
            'external_order_id': str(o['id']),
            'order_number': str(o['id']),
            'customer_email': billing.get('email'),
            'customer_name': split_name(billing.get('first_name'), billing.get('last_name')),
            'customer_phone': billing.get('phone'),
            'billing_address': o.get('billing_address'),
            'shipping_address': shipping,
            'total_amount': to_money(o.get('total_inc_tax') or o.get('total_ex_tax') or 0),
            'currency': o.get('currency_code') or 'USD',
            'order_status': status,
            'fulfillment_status': 'fulfilled' if status == ORDER_SHIPPED else 'unfulfilled',
            'payment_status': o.get('payment_status') or 'pending',
            'notes': o.get('customer_message') or o.get('staff_notes') or '',
            'tags': f"status_{o['status_id']}" if o.get('status_id') is not None else '',
            'order_date': parse_datetime(o.get('date_created')),
            'updated_at': parse_datetime(o.get('date_modified')),
            'items': items,
        }

    def _push_tracking(self, external_order_id, tracking_number, carrier):
        addresses = self.get_json(f"/orders/{external_order_id}/shipping_addresses", default=[]) or []
        if not addresses:
            raise PlatformError(f"BigCommerce order {external_order_id} has no shipping address")
        products = self.get_json(f"/orders/{external_order_id}/products", default=[]) or []
        payload = {
            'order_address_id': addresses[0]['id'],
            'tracking_number': tracking_number or '',
            'tracking_carrier': (carrier or '').lower(),
            'items': [{'order_product_id': p['id'], 'quantity': p.get('quantity', 1)} for p in products],
        }
        self._send('POST', f"/orders/{external_order_id}/shipments", json=payload)
