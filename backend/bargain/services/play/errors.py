"""Typed failures surfaced by the play services.

Each error knows the HTTP status the blueprints answer with, so routes
never have to translate storage or transport exceptions themselves.
"""


class PlayError(Exception):
    status = 400
    code = 'play_error'

    def __init__(self, message=None, **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self):
        payload = {'success': False, 'error': self.code, 'message': self.message}
        payload.update(self.details)
        return payload


class ValidationError(PlayError):
    status = 400
    code = 'invalid_request'


class ConfigError(PlayError):
    """A shop configuration document violates an invariant."""
    status = 400
    code = 'invalid_config'


class ShopDisabled(PlayError):
    status = 403
    code = 'shop_inactive'


class SessionNotFound(PlayError):
    status = 404
    code = 'session_not_found'


class AlreadyCompleted(PlayError):
    """The session reached a terminal state that cannot produce an outcome."""
    status = 409
    code = 'session_closed'


class SessionExpired(AlreadyCompleted):
    status = 410
    code = 'session_expired'


class InvalidScore(PlayError):
    status = 422
    code = 'invalid_score'


class RateLimitExceeded(PlayError):
    status = 429
    code = 'rate_limited'


class IssuerUnavailable(PlayError):
    status = 503
    code = 'issuer_unavailable'


class StoreUnavailable(PlayError):
    status = 503
    code = 'store_unavailable'
