"""
Authentication views.

Staff log in with username and password and receive a DRF token.  The
response also carries the hospital the account acts for, which the
front-end shows in its header.
"""
from __future__ import annotations

import structlog
from django.contrib.auth import authenticate
from rest_framework.authtoken.models import Token
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from exchange.serializers.auth import LoginSerializer
from exchange.services.audit import log_action

logger = structlog.get_logger(__name__)


@api_view(['POST'])
@permission_classes([AllowAny])
def login_view(request):
    s = LoginSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    username = s.validated_data['username']
    password = s.validated_data['password']

    user = authenticate(request, username=username, password=password)
    if not user:
        log_action(user=None, action='login', object_type='user', object_id=None,
                   detail={'result': 'fail', 'username': username, 'ip': request.META.get('REMOTE_ADDR')})
        logger.info('login_failed', username=username)
        return Response({'ok': False, 'error': {'code': 'invalid_credentials',
                                                'message': 'wrong username or password'}}, status=400)

    log_action(user=user, action='login', object_type='user', object_id=user.id,
               detail={'result': 'ok', 'ip': request.META.get('REMOTE_ADDR')})
    token_obj, _ = Token.objects.get_or_create(user=user)

    payload: dict[str, object] = {
        'ok': True,
        'token': token_obj.key,
        'user': {
            'id': user.id,
            'username': user.username,
            'name': user.get_full_name() or user.username,
        },
        'hospital': None,
    }
    if user.hospital_id:
        payload['hospital'] = {
            'id': user.hospital.id,
            'name': user.hospital.name,
            'location': user.hospital.location,
        }
    logger.info('login', user_id=user.id, hospital_id=user.hospital_id)
    return Response(payload, status=200)

# DRF ScopedRateThrottle uses throttle_scope on the view function
login_view.throttle_scope = 'login'
