"""
Database models for the surplus medication exchange.

These models capture hospitals, their surplus listings, seeker requests,
the reservations held against listings, exchange requests with their
transition log, and the per-exchange conversation.  Field names mirror
the payloads exchanged with the front-end so that responses can be
built without an extra translation layer.
"""
from __future__ import annotations

import uuid
from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import F, Q


class Hospital(models.Model):
    """A participating hospital (provider, seeker, or both)."""
    name = models.CharField(max_length=255)
    location = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.name} (#{self.id})"


class User(AbstractUser):
    """Staff account acting on behalf of exactly one hospital."""
    hospital = models.ForeignKey(
        Hospital, null=True, blank=True, on_delete=models.SET_NULL, related_name='users', db_index=True
    )

    def __str__(self) -> str:
        return f"{self.username} @ {self.hospital_id}"


class HospitalDistance(models.Model):
    """Precomputed road distance between two hospitals.

    Rows are produced by the external geocoding collaborator.  Lookups
    are symmetric: a single row serves both directions.
    """
    from_hospital = models.ForeignKey(Hospital, on_delete=models.CASCADE, related_name='distances_from')
    to_hospital = models.ForeignKey(Hospital, on_delete=models.CASCADE, related_name='distances_to')
    distance_km = models.FloatField()

    class Meta:
        unique_together = [('from_hospital', 'to_hospital')]

    def __str__(self) -> str:
        return f"{self.from_hospital_id}<->{self.to_hospital_id}: {self.distance_km}km"


class DrugListing(models.Model):
    """Surplus stock offered by a provider hospital.

    ``quantity_reserved`` is only ever changed through the reservation
    helpers in :mod:`exchange.services.inventory`; the check constraints
    keep ``0 <= quantity_reserved <= quantity_total`` true at the
    database level as well.
    """
    hospital = models.ForeignKey(Hospital, on_delete=models.CASCADE, related_name='listings')
    raw_name = models.CharField(max_length=255)
    canonical_name = models.CharField(max_length=255, db_index=True)
    name_tokens = models.JSONField(default=list, blank=True)
    din = models.CharField(max_length=16, blank=True, db_index=True)
    dosage = models.CharField(max_length=64, blank=True)
    dosage_value = models.FloatField(null=True, blank=True)
    dosage_unit = models.CharField(max_length=16, blank=True)
    quantity_total = models.PositiveIntegerField()
    quantity_reserved = models.PositiveIntegerField(default=0)
    expiry = models.DateField(null=True, blank=True)
    shareable = models.BooleanField(default=True, db_index=True)
    active = models.BooleanField(default=True, db_index=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['shareable', 'active', 'created_at'], name='exchange_dr_shareab_5c1e0a_idx'),
            models.Index(fields=['hospital', 'created_at'], name='exchange_dr_hospita_9b7d21_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(quantity_reserved__lte=F('quantity_total')),
                name='listing_reserved_lte_total',
            ),
        ]

    @property
    def quantity_available(self) -> int:
        return self.quantity_total - self.quantity_reserved

    def __str__(self) -> str:
        return f"{self.raw_name} x{self.quantity_total} ({self.hospital_id})"


class DrugRequest(models.Model):
    """A seeker's search.  Never updated after creation; re-submit instead."""
    PRIORITY_LOW = 'low'
    PRIORITY_MEDIUM = 'medium'
    PRIORITY_HIGH = 'high'
    PRIORITY_CRITICAL = 'critical'
    PRIORITY_CHOICES = (
        (PRIORITY_LOW, 'low'),
        (PRIORITY_MEDIUM, 'medium'),
        (PRIORITY_HIGH, 'high'),
        (PRIORITY_CRITICAL, 'critical'),
    )
    URGENT_PRIORITIES = (PRIORITY_HIGH, PRIORITY_CRITICAL)

    seeker_hospital = models.ForeignKey(Hospital, on_delete=models.CASCADE, related_name='drug_requests')
    raw_text = models.CharField(max_length=255)
    raw_dosage = models.CharField(max_length=64, blank=True)
    quantity_needed = models.PositiveIntegerField()
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default=PRIORITY_MEDIUM)
    max_distance_km = models.FloatField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=['seeker_hospital', 'created_at'], name='exchange_dr_seeker__3f0b6e_idx')]

    def __str__(self) -> str:
        return f"request {self.id}: {self.raw_text} x{self.quantity_needed} [{self.priority}]"


class Reservation(models.Model):
    """A quantity slice held against one listing.

    The ``token`` is what callers hold on to; releasing or consuming a
    token that is no longer ``held`` is a no-op.
    """
    STATE_HELD = 'held'
    STATE_RELEASED = 'released'
    STATE_CONSUMED = 'consumed'
    STATE_CHOICES = ((STATE_HELD, 'held'), (STATE_RELEASED, 'released'), (STATE_CONSUMED, 'consumed'))

    token = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    listing = models.ForeignKey(DrugListing, on_delete=models.CASCADE, related_name='reservations')
    quantity = models.PositiveIntegerField()
    state = models.CharField(max_length=10, choices=STATE_CHOICES, default=STATE_HELD, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    closed_at = models.DateTimeField(null=True, blank=True)

    def __str__(self) -> str:
        return f"reservation {self.token} {self.quantity}@{self.listing_id} [{self.state}]"


class ExchangeRequest(models.Model):
    """A proposed transfer of part of one listing to a seeker."""
    STATE_PROPOSED = 'proposed'
    STATE_ACCEPTED = 'accepted'
    STATE_DECLINED = 'declined'
    STATE_COMPLETED = 'completed'
    STATE_EXPIRED = 'expired'
    STATE_CANCELLED = 'cancelled'
    STATE_CHOICES = (
        (STATE_PROPOSED, 'proposed'),
        (STATE_ACCEPTED, 'accepted'),
        (STATE_DECLINED, 'declined'),
        (STATE_COMPLETED, 'completed'),
        (STATE_EXPIRED, 'expired'),
        (STATE_CANCELLED, 'cancelled'),
    )

    request = models.ForeignKey(DrugRequest, on_delete=models.PROTECT, related_name='exchanges')
    listing = models.ForeignKey(DrugListing, on_delete=models.PROTECT, related_name='exchanges')
    quantity_requested = models.PositiveIntegerField()
    state = models.CharField(max_length=16, choices=STATE_CHOICES, default=STATE_PROPOSED, db_index=True)
    reserved_quantity = models.PositiveIntegerField(default=0)
    reservation_token = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    decided_at = models.DateTimeField(null=True, blank=True)
    completion_deadline = models.DateTimeField(null=True, blank=True, db_index=True)
    closed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=['state', 'completion_deadline'], name='exchange_ex_state_2a9c4d_idx'),
            models.Index(fields=['listing', 'state'], name='exchange_ex_listing_7e3f10_idx'),
        ]

    @property
    def seeker_hospital_id(self) -> int:
        return self.request.seeker_hospital_id

    @property
    def provider_hospital_id(self) -> int:
        return self.listing.hospital_id

    def __str__(self) -> str:
        return f"exchange {self.id} listing={self.listing_id} x{self.quantity_requested} [{self.state}]"


class ExchangeTransition(models.Model):
    """Durable record of one applied exchange state change."""
    exchange = models.ForeignKey(ExchangeRequest, related_name='transitions', on_delete=models.CASCADE)
    from_state = models.CharField(max_length=16, null=True, blank=True)
    to_state = models.CharField(max_length=16)
    actor_hospital = models.ForeignKey(Hospital, null=True, blank=True, on_delete=models.SET_NULL)
    reason = models.CharField(max_length=255, blank=True)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=['exchange', 'timestamp'], name='exchange_ex_exchang_41d8b2_idx')]

    def __str__(self) -> str:
        return f"{self.exchange_id}: {self.from_state} → {self.to_state}"


# ---------------------------------------------------------------------------
# Messaging (conversation id == exchange id)
# ---------------------------------------------------------------------------

class Conversation(models.Model):
    exchange = models.OneToOneField(
        ExchangeRequest, primary_key=True, on_delete=models.PROTECT, related_name='conversation'
    )
    last_seq = models.PositiveIntegerField(default=0)
    last_message_at = models.DateTimeField(blank=True, null=True)
    # Highest seq each party has read; system notices are unread per party.
    seeker_read_seq = models.PositiveIntegerField(default=0)
    provider_read_seq = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=['last_message_at'], name='exchange_co_last_me_8c52a7_idx')]

    def __str__(self):
        return f"conversation {self.pk}"


class Message(models.Model):
    STATUS_SENT = 'sent'
    STATUS_DELIVERED = 'delivered'
    STATUS_READ = 'read'
    STATUS_CHOICES = ((STATUS_SENT, 'sent'), (STATUS_DELIVERED, 'delivered'), (STATUS_READ, 'read'))

    conversation = models.ForeignKey(Conversation, on_delete=models.CASCADE, related_name='messages')
    # Null sender marks a system notice emitted by an exchange transition.
    sender_hospital = models.ForeignKey(Hospital, null=True, blank=True, on_delete=models.SET_NULL)
    seq = models.PositiveIntegerField()
    content = models.TextField()
    sent_at = models.DateTimeField()
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_SENT)

    class Meta:
        unique_together = [('conversation', 'seq')]
        indexes = [models.Index(fields=['conversation', 'status'], name='exchange_me_convers_6b0e93_idx')]

    def __str__(self):
        return f"msg {self.id} conversation={self.conversation_id} #{self.seq}"


class AuditEvent(models.Model):
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=64)
    object_type = models.CharField(max_length=64, blank=True, null=True)
    object_id = models.IntegerField(blank=True, null=True)
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['action', 'created_at'], name='exchange_au_action_0d7f5c_idx'),
            models.Index(fields=['object_type', 'object_id', 'created_at'], name='exchange_au_object__e4a2c9_idx'),
        ]
