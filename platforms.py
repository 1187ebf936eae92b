"""
Platform client registry.

Dispatch is by the platform tag stored on the Store row, never by the
type of a client object.
"""
from flask import current_app

from bigcommerce_client import BigCommerceClient
from errors import ValidationError
from helpers import get_config
from shopify_client import ShopifyClient
from woocommerce_client import WooCommerceClient

PLATFORM_CLIENTS = {
    'shopify': ShopifyClient,
    'bigcommerce': BigCommerceClient,
    'woocommerce': WooCommerceClient,
}


def get_platform_client(store):
    """Factory Function: builds a paced client for one store."""
    client_cls = PLATFORM_CLIENTS.get(store.platform)
    if client_cls is None:
        raise ValidationError(f"Unsupported store platform: {store.platform}", platform=store.platform)
    return client_cls(
        store,
        timeout=current_app.config.get('PLATFORM_TIMEOUT', 30),
        min_request_interval=get_config(store.id, 'request_interval'),
    )
