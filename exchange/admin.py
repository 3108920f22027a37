"""
Django admin registrations for the exchange models.

Lets superusers inspect listings, reservations and exchanges and fix
reference data (hospitals, distances) by hand.
"""

from django.contrib import admin

from .models import (
    AuditEvent,
    Conversation,
    DrugListing,
    DrugRequest,
    ExchangeRequest,
    ExchangeTransition,
    Hospital,
    HospitalDistance,
    Message,
    Reservation,
    User,
)


@admin.register(Hospital)
class HospitalAdmin(admin.ModelAdmin):
    list_display = ('id', 'name', 'location', 'created_at')
    search_fields = ('id', 'name', 'location')


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ('username', 'hospital', 'is_staff', 'is_superuser')
    list_filter = ('hospital',)
    search_fields = ('username', 'first_name', 'last_name')


@admin.register(HospitalDistance)
class HospitalDistanceAdmin(admin.ModelAdmin):
    list_display = ('from_hospital', 'to_hospital', 'distance_km')


@admin.register(DrugListing)
class DrugListingAdmin(admin.ModelAdmin):
    list_display = ('id', 'raw_name', 'dosage', 'hospital', 'quantity_total', 'quantity_reserved',
                    'expiry', 'shareable', 'active')
    list_filter = ('shareable', 'active', 'hospital')
    search_fields = ('raw_name', 'canonical_name', 'din')
    # Reservation bookkeeping only changes through the inventory service.
    readonly_fields = ('quantity_reserved', 'canonical_name', 'name_tokens')


@admin.register(DrugRequest)
class DrugRequestAdmin(admin.ModelAdmin):
    list_display = ('id', 'raw_text', 'seeker_hospital', 'quantity_needed', 'priority', 'created_at')
    list_filter = ('priority',)


@admin.register(Reservation)
class ReservationAdmin(admin.ModelAdmin):
    list_display = ('token', 'listing', 'quantity', 'state', 'created_at', 'closed_at')
    list_filter = ('state',)


class ExchangeTransitionInline(admin.TabularInline):
    model = ExchangeTransition
    extra = 0
    readonly_fields = ('from_state', 'to_state', 'actor_hospital', 'reason', 'timestamp')


@admin.register(ExchangeRequest)
class ExchangeRequestAdmin(admin.ModelAdmin):
    list_display = ('id', 'listing', 'request', 'quantity_requested', 'state', 'completion_deadline')
    list_filter = ('state',)
    readonly_fields = ('state', 'reserved_quantity', 'reservation_token')
    inlines = [ExchangeTransitionInline]


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = ('exchange', 'last_seq', 'seeker_read_seq', 'provider_read_seq', 'last_message_at')


@admin.register(Message)
class MessageAdmin(admin.ModelAdmin):
    list_display = ('id', 'conversation', 'seq', 'sender_hospital', 'status', 'sent_at')
    list_filter = ('status',)


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ('action', 'user', 'object_type', 'object_id', 'created_at')
    list_filter = ('action',)
