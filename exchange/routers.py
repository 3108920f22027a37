"""
URL mappings for the exchange API.

Paths follow the front-end's endpoint table; trailing slashes are
omitted on purpose (``APPEND_SLASH`` is off).
"""
from django.urls import path, include

from .auth_views import login_view
from .views import conversations, exchanges, health, listings, search

urlpatterns = [
    path('', include('django_prometheus.urls')),
    path('healthz', health.healthz, name='healthz'),
    # Authentication
    path('api/auth/login', login_view, name='login_view'),
    # Inventory
    path('api/listings', listings.listings, name='listings'),
    path('api/listings/update', listings.listing_update, name='listing_update'),
    path('api/listings/remove', listings.listing_remove, name='listing_remove'),
    path('api/listings/bulk', listings.listing_bulk_import, name='listing_bulk_import'),
    # Matching
    path('api/search', search.search, name='search'),
    # Exchanges
    path('api/exchanges', exchanges.exchange_list, name='exchange_list'),
    path('api/exchanges/<int:pk>', exchanges.exchange_detail, name='exchange_detail'),
    path('api/exchanges/propose', exchanges.exchange_propose, name='exchange_propose'),
    path('api/exchanges/respond', exchanges.exchange_respond, name='exchange_respond'),
    path('api/exchanges/complete', exchanges.exchange_complete, name='exchange_complete'),
    path('api/exchanges/cancel', exchanges.exchange_cancel, name='exchange_cancel'),
    # Conversations
    path('api/conversations', conversations.conversation_list, name='conversation_list'),
    path('api/conversations/history', conversations.conversation_history, name='conversation_history'),
    path('api/conversations/send', conversations.conversation_send, name='conversation_send'),
    path('api/conversations/read', conversations.conversation_read, name='conversation_read'),
]
