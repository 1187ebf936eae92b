class ConnectorError(Exception):
    """Base for every error the connector raises on purpose."""
    code = 'connector_error'
    http_status = 500

    def __init__(self, message=None, **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self):
        payload = {'error': self.code, 'message': self.message}
        payload.update(self.details)
        return payload


# --- UPSTREAM PLATFORM ERRORS ---
class PlatformError(ConnectorError):
    code = 'platform_error'
    http_status = 502
    retryable = False


class AuthError(PlatformError):
    code = 'auth_error'


class UnsupportedScope(PlatformError):
    code = 'unsupported_scope'


class RateLimited(PlatformError):
    code = 'rate_limited'
    http_status = 429
    retryable = True

    def __init__(self, message=None, retry_after=None, **details):
        super().__init__(message, retry_after=retry_after, **details)
        self.retry_after = retry_after


class TransientNetworkError(PlatformError):
    code = 'transient_network_error'
    http_status = 503
    retryable = True


# --- REQUEST ERRORS (rejected synchronously, never retried) ---
class RequestError(ConnectorError):
    code = 'bad_request'
    http_status = 400


class ValidationError(RequestError):
    code = 'validation_error'


class Forbidden(RequestError):
    code = 'forbidden'
    http_status = 403


class StoreNotFound(RequestError):
    code = 'store_not_found'
    http_status = 404


class OrderNotFound(RequestError):
    code = 'order_not_found'
    http_status = 404


class VendorNotFound(RequestError):
    code = 'vendor_not_found'
    http_status = 404


class AssignmentNotFound(RequestError):
    code = 'assignment_not_found'
    http_status = 404


class TrackingNotFound(RequestError):
    code = 'tracking_not_found'
    http_status = 404


class VendorNotApproved(RequestError):
    code = 'vendor_not_approved'
    http_status = 422


class OverAllocation(RequestError):
    code = 'over_allocation'
    http_status = 422


class InvalidTransition(RequestError):
    code = 'invalid_transition'
    http_status = 409


class ConcurrentUpdate(RequestError):
    code = 'concurrent_update'
    http_status = 409


class AssignmentLocked(RequestError):
    code = 'assignment_locked'
    http_status = 409
