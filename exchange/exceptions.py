import structlog
from rest_framework.views import exception_handler as drf_exception_handler
from rest_framework.response import Response

logger = structlog.get_logger(__name__)


class ExchangeError(Exception):
    """Base class for engine errors surfaced to API callers."""
    code = 'exchange_error'
    status_code = 400

    def __init__(self, message: str = '', **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context


class InvalidRequest(ExchangeError):
    """Malformed or empty search/listing input.  Not retried."""
    code = 'invalid_request'
    status_code = 400


class InsufficientQuantity(ExchangeError):
    """Lost a reservation race, or the listing has too little stock."""
    code = 'insufficient_quantity'
    status_code = 409


class InvalidStateTransition(ExchangeError):
    """Exchange already terminal or a concurrent transition won first."""
    code = 'invalid_state_transition'
    status_code = 409


class ConversationNotFound(ExchangeError):
    code = 'conversation_not_found'
    status_code = 404


class NotFound(ExchangeError):
    code = 'not_found'
    status_code = 404


class Forbidden(ExchangeError):
    code = 'forbidden'
    status_code = 403


def api_exception_handler(exc, context):
    if isinstance(exc, ExchangeError):
        if isinstance(exc, ConversationNotFound):
            logger.error('conversation_not_found', message=exc.message, context=exc.context)
        body = {'code': exc.code, 'message': exc.message}
        if exc.context:
            body['context'] = {k: v for k, v in exc.context.items() if isinstance(v, (str, int, float, bool))}
        return Response({'ok': False, 'error': body}, status=exc.status_code)
    resp = drf_exception_handler(exc, context)
    if resp is None:
        logger.exception('unhandled_api_error', view=type(context.get('view')).__name__)
        return Response({'ok': False, 'error': {'code': 'server_error', 'message': str(exc)}}, status=500)
    # normalize response
    detail = None
    if isinstance(resp.data, dict):
        detail = resp.data.get('detail') or resp.data
    else:
        detail = str(resp.data)
    return Response({'ok': False, 'error': {'code': 'api_error', 'message': detail}}, status=resp.status_code)
