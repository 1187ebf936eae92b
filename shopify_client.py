import json
import os

import shopify

from errors import PlatformError
from helpers import to_money, parse_datetime, to_iso_utc
from models import ORDER_CANCELLED, ORDER_PROCESSING, ORDER_SHIPPED
from platform_client import PlatformClient, split_name

SHOPIFY_API_VERSION = os.getenv('SHOPIFY_API_VERSION', '2025-10')  # UNIFIED VERSION
PAGE_SIZE = 250  # Shopify REST max


class ShopifyClient(PlatformClient):
    platform = 'shopify'
    min_request_interval = 0.5  # REST bucket leaks 2 calls/sec
    status_map = {
        'cancelled': ORDER_CANCELLED,
        'restocked': ORDER_CANCELLED,
        'fulfilled': ORDER_SHIPPED,
        'partial': ORDER_SHIPPED,
        'unfulfilled': ORDER_PROCESSING,
        None: ORDER_PROCESSING,
    }

    def __init__(self, store, api_version=None, **kwargs):
        super().__init__(store, **kwargs)
        self.api_version = api_version or self.credentials.get('api_version') or SHOPIFY_API_VERSION
        self.shop_domain = normalize_shop_domain(self.credentials.get('shop_url') or self.base_url)
        self.access_token = self.credentials.get('access_token')
        self.session.headers['X-Shopify-Access-Token'] = self.access_token or ''

    def api_root(self):
        return f"https://{self.shop_domain}/admin/api/{self.api_version}"

    def fetch_orders(self, since=None, limit=50):
        params = {'status': 'any', 'limit': min(limit, PAGE_SIZE), 'order': 'updated_at asc'}
        if since:
            params['updated_at_min'] = to_iso_utc(since)

        orders = []
        url = '/orders.json'
        while url and len(orders) < limit:
            resp = self._send('GET', url, params=params)
            batch = (self._json(resp, {}) or {}).get('orders', [])
            orders.extend(self.transform_order(o) for o in batch)
            # Cursor pagination: the next link already carries every filter
            url = resp.links.get('next', {}).get('url')
            params = None
        return orders[:limit]

    def fetch_order_detail(self, external_order_id):
        data = self.get_json(f"/orders/{external_order_id}.json", default={}) or {}
        if not data.get('order'):
            raise PlatformError(f"Shopify order {external_order_id} not found")
        return self.transform_order(data['order'])

    def status_key(self, order):
        if order.get('cancelled_at'):
            return 'cancelled'
        return order.get('fulfillment_status')

    def transform_order(self, o):
        customer = o.get('customer') or {}
        billing = o.get('billing_address') or {}
        name = split_name(customer.get('first_name'), customer.get('last_name')) or \
            split_name(billing.get('first_name'), billing.get('last_name'))

        items = []
        for li in o.get('line_items', []):
            qty = int(li.get('quantity', 0))
            price = to_money(li.get('price'))
            items.append({
                'external_item_id': str(li['id']),
                'product_name': li.get('name') or li.get('title'),
                'sku': li.get('sku'),
                'quantity': qty,
                'unit_price': price,
                'total_price': price * qty - to_money(li.get('total_discount')),
                'variant_title': li.get('variant_title') or '',
                'product_data': {
                    'product_id': li.get('product_id'),
                    'variant_id': li.get('variant_id'),
                    'vendor': li.get('vendor'),
                    'properties': li.get('properties') or [],
                },
            })

        return {
            'external_order_id': str(o['id']),
            'order_number': o.get('name') or str(o.get('order_number', '')),
            'customer_email': o.get('email') or o.get('contact_email'),
            'customer_name': name,
            'customer_phone': o.get('phone') or customer.get('phone') or billing.get('phone'),
            'billing_address': o.get('billing_address'),
            'shipping_address': o.get('shipping_address'),
            'total_amount': to_money(o.get('total_price')),
            'currency': o.get('currency') or 'USD',
            'order_status': self.map_status(self.status_key(o)),
            'fulfillment_status': o.get('fulfillment_status') or 'unfulfilled',
            'payment_status': o.get('financial_status') or 'pending',
            'notes': o.get('note') or '',
            'tags': o.get('tags') or '',
            'order_date': parse_datetime(o.get('created_at')),
            'updated_at': parse_datetime(o.get('updated_at')),
            'items': items,
        }

    # --- TRACKING PUSH (fulfillment orders API via the ShopifyAPI GraphQL client) ---
    def _push_tracking(self, external_order_id, tracking_number, carrier):
        session = shopify.Session(self.shop_domain, self.api_version, self.access_token)
        shopify.ShopifyResource.activate_session(session)
        try:
            client = shopify.GraphQL()
            self._pace()
            query = """query($id: ID!) { order(id: $id) { fulfillmentOrders(first: 20) { edges { node { id status } } } } }"""
            data = json.loads(client.execute(query, variables={'id': f"gid://shopify/Order/{external_order_id}"}))
            edges = (((data.get('data') or {}).get('order') or {}).get('fulfillmentOrders') or {}).get('edges', [])
            open_ids = [e['node']['id'] for e in edges if e['node'].get('status') in ('OPEN', 'IN_PROGRESS')]
            if not open_ids:
                raise PlatformError(f"No open fulfillment order on Shopify order {external_order_id}")

            fulfillment = {
                'lineItemsByFulfillmentOrder': [{'fulfillmentOrderId': fo_id} for fo_id in open_ids],
                'notifyCustomer': True,
            }
            if tracking_number:
                fulfillment['trackingInfo'] = {'number': tracking_number, 'company': carrier or 'Other'}

            mutation = """mutation($fulfillment: FulfillmentInput!) {
                fulfillmentCreate(fulfillment: $fulfillment) { fulfillment { id status } userErrors { field message } }
            }"""
            self._pace()
            result = json.loads(client.execute(mutation, variables={'fulfillment': fulfillment}))
            if result.get('errors'):
                raise PlatformError(f"Shopify GraphQL error: {result['errors']}")
            errors = ((result.get('data') or {}).get('fulfillmentCreate') or {}).get('userErrors') or []
            if errors:
                raise PlatformError("Shopify fulfillment rejected: " + '; '.join(e.get('message', '') for e in errors))
        finally:
            shopify.ShopifyResource.clear_session()


def normalize_shop_domain(value):
    """'https://Shop.myshopify.com/' -> 'shop.myshopify.com'"""
    value = (value or '').strip().lower()
    for prefix in ('https://', 'http://'):
        if value.startswith(prefix):
            value = value[len(prefix):]
    return value.rstrip('/')
