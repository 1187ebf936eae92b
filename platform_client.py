import threading
import time

import requests

from errors import PlatformError, AuthError, UnsupportedScope, RateLimited, TransientNetworkError
from models import ORDER_PROCESSING


class PlatformClient:
    """
    Shared plumbing for one storefront connection.

    Subclasses translate the platform's native order payloads into the
    canonical order dict and implement fetch_orders / fetch_order_detail /
    _push_tracking. Pacing, timeouts and the HTTP status -> error taxonomy
    live here so every platform behaves the same way towards the sync.
    """
    platform = None
    min_request_interval = 0.5  # seconds between two calls on this connection
    status_map = {}

    def __init__(self, store, timeout=30, min_request_interval=None):
        self.store_id = store.id
        self.store_name = store.name
        self.base_url = (store.base_url or '').rstrip('/')
        self.credentials = store.api_credentials or {}
        self.timeout = timeout
        if min_request_interval is not None:
            self.min_request_interval = float(min_request_interval)
        self.last_error = None
        self.session = requests.Session()
        self.session.headers.update({'Accept': 'application/json', 'Content-Type': 'application/json'})
        self._last_call = 0.0
        self._pace_lock = threading.Lock()

    # --- CONTRACT ---
    def fetch_orders(self, since=None, limit=50):
        raise NotImplementedError

    def fetch_order_detail(self, external_order_id):
        raise NotImplementedError

    def _push_tracking(self, external_order_id, tracking_number, carrier):
        raise NotImplementedError

    def push_tracking_update(self, external_order_id, tracking_number=None, carrier=None):
        """Best-effort. Never raises; the reason of a failure is left in last_error."""
        self.last_error = None
        try:
            self._push_tracking(str(external_order_id), tracking_number, carrier)
            return True
        except Exception as e:
            self.last_error = str(e)
            return False

    def test_connection(self):
        self.fetch_orders(None, 1)
        return True

    def map_status(self, native):
        """Total over the platform vocabulary: anything unknown is 'processing'."""
        return self.status_map.get(native, ORDER_PROCESSING)

    # --- HTTP ---
    def _pace(self):
        with self._pace_lock:
            wait = self.min_request_interval - (time.monotonic() - self._last_call)
            if wait > 0:
                time.sleep(wait)
            self._last_call = time.monotonic()

    def _url(self, path):
        if path.startswith('http://') or path.startswith('https://'):
            return path
        return f"{self.api_root()}{path}"

    def api_root(self):
        return self.base_url

    def _send(self, method, path, **kwargs):
        self._pace()
        url = self._url(path)
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise TransientNetworkError(f"{self.platform} request timed out: {method} {path}", detail=str(e))
        except requests.ConnectionError as e:
            raise TransientNetworkError(f"{self.platform} connection failed: {method} {path}", detail=str(e))

        status = resp.status_code
        if status == 401:
            raise AuthError(f"{self.platform} rejected the store credentials ({self.store_name})")
        if status == 403:
            raise UnsupportedScope(f"{self.platform} token lacks a required permission for {method} {path}",
                                   detail=(resp.text or '')[:500])
        if status == 429:
            raise RateLimited(f"{self.platform} throttled {method} {path}", retry_after=_retry_after(resp))
        if status >= 500:
            raise TransientNetworkError(f"{self.platform} server error {status} on {method} {path}")
        if status >= 400:
            raise PlatformError(f"{self.platform} {method} {path} failed {status}: {(resp.text or '')[:500]}",
                                status=status)
        return resp

    def _json(self, resp, default=None):
        # Platforms answer 204 / empty bodies for empty collections
        text = resp.text or ''
        if not text.strip():
            return default
        try:
            return resp.json()
        except ValueError:
            raise PlatformError(f"{self.platform} returned a non-JSON body: {text[:200]}")

    def get_json(self, path, params=None, default=None):
        return self._json(self._send('GET', path, params=params), default)


def _retry_after(resp):
    value = resp.headers.get('Retry-After')
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def split_name(first, last):
    return f"{first or ''} {last or ''}".strip()
