import uuid

import structlog


class RequestLogContextMiddleware:
    """Bind request id, method and path to every log line of a request."""
    HEADER = 'HTTP_X_REQUEST_ID'

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request_id = request.META.get(self.HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.path,
        )
        user = getattr(request, 'user', None)
        if user is not None and user.is_authenticated:
            structlog.contextvars.bind_contextvars(user_id=user.id, hospital_id=getattr(user, 'hospital_id', None))
        response = self.get_response(request)
        response['X-Request-ID'] = request_id
        return response
