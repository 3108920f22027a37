"""
Exchange coordinator.

Drives an :class:`~exchange.models.ExchangeRequest` through its
lifecycle.  Every applied transition happens inside one database
transaction together with its side effects: the reservation is
released or consumed, an :class:`~exchange.models.ExchangeTransition`
row is written and a system notice is appended to the exchange's
conversation.  Rejected transitions change nothing.

Overdue accepted exchanges are expired lazily, the first time anything
touches them, and in bulk by the ``sweep_exchanges`` command.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from exchange.conf import exchange_setting
from exchange.exceptions import Forbidden, InvalidRequest, InvalidStateTransition, NotFound
from exchange.models import DrugListing, DrugRequest, ExchangeRequest, ExchangeTransition
from exchange.services import inventory, lifecycle, messaging
from exchange.services.audit import log_action
from exchange.services.lifecycle import Applied

logger = structlog.get_logger(__name__)

ROLE_SEEKER = 'seeker'
ROLE_PROVIDER = 'provider'
DECISIONS = (lifecycle.EVENT_ACCEPT, lifecycle.EVENT_DECLINE)
# Events only the providing hospital may trigger.
PROVIDER_EVENTS = frozenset(DECISIONS)


@dataclass(frozen=True)
class Selection:
    """The listing a seeker picked for one of their requests.

    Anything with ``listing_id`` and ``request_id`` works as a
    candidate, including the ``MatchCandidate`` values the matcher
    yields.
    """
    listing_id: int
    request_id: int


def _hospital_id(hospital) -> Optional[int]:
    return getattr(hospital, 'id', hospital)


def serialize_exchange(ex: ExchangeRequest) -> dict:
    return {
        "id": ex.id,
        "requestId": ex.request_id,
        "listingId": ex.listing_id,
        "drugName": ex.listing.raw_name,
        "dosage": ex.listing.dosage,
        "seekerHospitalId": ex.request.seeker_hospital_id,
        "seekerHospitalName": ex.request.seeker_hospital.name,
        "providerHospitalId": ex.listing.hospital_id,
        "providerHospitalName": ex.listing.hospital.name,
        "priority": ex.request.priority,
        "quantityRequested": ex.quantity_requested,
        "reservedQuantity": ex.reserved_quantity,
        "state": ex.state,
        "createdAt": ex.created_at.isoformat(),
        "decidedAt": ex.decided_at.isoformat() if ex.decided_at else None,
        "completionDeadline": ex.completion_deadline.isoformat() if ex.completion_deadline else None,
        "closedAt": ex.closed_at.isoformat() if ex.closed_at else None,
    }


def _notice(ex: ExchangeRequest, state: str, reason: str = '') -> str:
    drug = ex.listing.raw_name
    if state == lifecycle.PROPOSED:
        return f"{ex.request.seeker_hospital.name} requested {ex.quantity_requested} x {drug}."
    if state == lifecycle.ACCEPTED:
        deadline = timezone.localtime(ex.completion_deadline).date().isoformat()
        return f"{ex.listing.hospital.name} accepted the request. Complete the exchange by {deadline}."
    if state == lifecycle.DECLINED:
        return f"{ex.listing.hospital.name} declined the request."
    if state == lifecycle.COMPLETED:
        return f"Exchange completed: {ex.quantity_requested} x {drug} transferred."
    if state == lifecycle.EXPIRED:
        return "Exchange expired: it was not completed before the deadline."
    text = "Exchange cancelled."
    return f"{text} Reason: {reason}" if reason else text


def _record(ex: ExchangeRequest, from_state: Optional[str], to_state: str, actor_id: Optional[int],
            reason: str = '') -> None:
    ExchangeTransition.objects.create(
        exchange=ex, from_state=from_state, to_state=to_state,
        actor_hospital_id=actor_id, reason=(reason or '')[:255],
    )
    messaging.append(ex.pk, None, _notice(ex, to_state, reason))


def propose(candidate, quantity_requested: int, *, hospital=None, user=None) -> ExchangeRequest:
    """Reserve stock on the candidate's listing and open an exchange.

    Fails with :class:`InsufficientQuantity` when the listing can no
    longer cover ``quantity_requested``; in that case nothing is
    created.
    """
    if quantity_requested is None or quantity_requested <= 0:
        raise InvalidRequest('quantity must be positive')
    request = DrugRequest.objects.select_related('seeker_hospital').filter(pk=candidate.request_id).first()
    if request is None:
        raise NotFound('request not found', request_id=candidate.request_id)
    actor_id = _hospital_id(hospital)
    if actor_id is not None and request.seeker_hospital_id != actor_id:
        raise Forbidden('request belongs to another hospital', request_id=request.id)
    listing = DrugListing.objects.select_related('hospital').filter(pk=candidate.listing_id).first()
    if listing is None:
        raise NotFound('listing not found', listing_id=candidate.listing_id)
    if listing.hospital_id == request.seeker_hospital_id:
        raise InvalidRequest('cannot request stock from your own hospital', listing_id=listing.id)
    if listing.expiry and listing.expiry < timezone.localdate():
        raise InvalidRequest('listing has expired', listing_id=listing.id)
    expire_overdue_holds(listing_ids=[listing.id])

    with transaction.atomic():
        token = inventory.reserve(listing.id, quantity_requested)
        ex = ExchangeRequest.objects.create(
            request=request,
            listing=listing,
            quantity_requested=quantity_requested,
            state=lifecycle.PROPOSED,
            reserved_quantity=token.quantity,
            reservation_token=token.token,
        )
        messaging.open_conversation(ex)
        _record(ex, None, lifecycle.PROPOSED, request.seeker_hospital_id)

    log_action(user=user, action='exchange_propose', object_type='exchange', object_id=ex.id,
               detail={'listing': listing.id, 'quantity': quantity_requested})
    logger.info('exchange_propose', exchange_id=ex.id, listing_id=listing.id, request_id=request.id,
                quantity=quantity_requested)
    return ex


def _load(exchange_id: int) -> ExchangeRequest:
    ex = (
        ExchangeRequest.objects
        .select_related('request', 'request__seeker_hospital', 'listing', 'listing__hospital')
        .filter(pk=exchange_id)
        .first()
    )
    if ex is None:
        raise NotFound('exchange not found', exchange_id=exchange_id)
    return ex


def _check_party(ex: ExchangeRequest, actor_id: int) -> None:
    if actor_id not in (ex.seeker_hospital_id, ex.provider_hospital_id):
        raise Forbidden('not a party to this exchange', exchange_id=ex.id)


def _check_actor(ex: ExchangeRequest, event: str, actor_id: int) -> None:
    _check_party(ex, actor_id)
    if event == lifecycle.EVENT_EXPIRE:
        raise Forbidden('exchanges expire on their own', exchange_id=ex.id)
    if event in PROVIDER_EVENTS and actor_id != ex.provider_hospital_id:
        raise Forbidden('only the providing hospital can respond', exchange_id=ex.id)


def _apply(ex: ExchangeRequest, outcome: Applied, *, actor_id: Optional[int], reason: str,
           now: datetime) -> bool:
    to_state = outcome.to_state
    fields = {'state': to_state}
    if to_state == lifecycle.ACCEPTED:
        fields['decided_at'] = now
        fields['completion_deadline'] = now + timedelta(days=exchange_setting('COMPLETION_WINDOW_DAYS'))
    elif to_state == lifecycle.DECLINED:
        fields['decided_at'] = now
    if lifecycle.is_terminal(to_state):
        fields['closed_at'] = now
        fields['reserved_quantity'] = 0

    # The state filter makes the write a compare-and-swap even where row
    # locks are unavailable.
    if not ExchangeRequest.objects.filter(pk=ex.pk, state=outcome.from_state).update(**fields):
        return False
    for name, value in fields.items():
        setattr(ex, name, value)

    if to_state == lifecycle.COMPLETED:
        inventory.consume(ex.reservation_token)
    elif to_state in lifecycle.RELEASING_STATES:
        inventory.release(ex.reservation_token)
    _record(ex, outcome.from_state, to_state, actor_id, reason)
    return True


def _is_overdue(ex: ExchangeRequest, now: datetime) -> bool:
    return (
        ex.state == lifecycle.ACCEPTED
        and ex.completion_deadline is not None
        and now > ex.completion_deadline
    )


def _expire_locked(ex: ExchangeRequest, now: datetime) -> bool:
    if not _is_overdue(ex, now):
        return False
    outcome = lifecycle.advance(ex.state, lifecycle.EVENT_EXPIRE)
    if not isinstance(outcome, Applied):
        return False
    if _apply(ex, outcome, actor_id=None, reason='completion deadline passed', now=now):
        logger.info('exchange_expire', exchange_id=ex.id, deadline=ex.completion_deadline.isoformat())
        return True
    return False


def _transition(exchange_id: int, event: str, *, hospital=None, reason: str = '', user=None,
                now: Optional[datetime] = None) -> ExchangeRequest:
    now = now or timezone.now()
    actor_id = _hospital_id(hospital)
    if actor_id is not None:
        _check_actor(_load(exchange_id), event, actor_id)

    applied = False
    with transaction.atomic():
        ex = ExchangeRequest.objects.select_for_update().filter(pk=exchange_id).first()
        if ex is None:
            raise NotFound('exchange not found', exchange_id=exchange_id)
        # An overdue exchange expires first; that expiry sticks even when
        # the requested event is then refused.
        _expire_locked(ex, now)
        outcome = lifecycle.advance(ex.state, event)
        if isinstance(outcome, Applied):
            applied = _apply(ex, outcome, actor_id=actor_id, reason=reason, now=now)

    if not applied:
        state = ExchangeRequest.objects.filter(pk=exchange_id).values_list('state', flat=True).first()
        logger.warning('exchange_transition_rejected', exchange_id=exchange_id, transition=event, state=state,
                       outcome=type(outcome).__name__)
        raise InvalidStateTransition(
            f'cannot {event} an exchange that is {state}', exchange_id=exchange_id, state=state, event=event,
        )

    log_action(user=user, action=f'exchange_{event}', object_type='exchange', object_id=exchange_id,
               detail={'from': outcome.from_state, 'to': outcome.to_state, 'reason': reason})
    logger.info('exchange_transition', exchange_id=exchange_id, transition=event,
                from_state=outcome.from_state, to_state=outcome.to_state, actor_hospital_id=actor_id)
    return _load(exchange_id)


def respond(exchange_id: int, decision: str, *, hospital=None, user=None) -> ExchangeRequest:
    """Provider accepts or declines a proposed exchange."""
    if decision not in DECISIONS:
        raise InvalidRequest('decision must be accept or decline', decision=decision)
    return _transition(exchange_id, decision, hospital=hospital, user=user)


def complete(exchange_id: int, *, hospital=None, user=None) -> ExchangeRequest:
    """Confirm the hand-over; the reserved stock leaves the listing for good."""
    return _transition(exchange_id, lifecycle.EVENT_COMPLETE, hospital=hospital, user=user)


def cancel(exchange_id: int, *, hospital=None, reason: str = '', user=None) -> ExchangeRequest:
    return _transition(exchange_id, lifecycle.EVENT_CANCEL, hospital=hospital, reason=reason, user=user)


def expire_if_overdue(exchange_id: int, now: Optional[datetime] = None) -> bool:
    now = now or timezone.now()
    with transaction.atomic():
        ex = ExchangeRequest.objects.select_for_update().filter(pk=exchange_id).first()
        if ex is None:
            raise NotFound('exchange not found', exchange_id=exchange_id)
        return _expire_locked(ex, now)


def get_exchange(exchange_id: int, *, hospital=None, now: Optional[datetime] = None) -> ExchangeRequest:
    expire_if_overdue(exchange_id, now)
    ex = _load(exchange_id)
    actor_id = _hospital_id(hospital)
    if actor_id is not None:
        _check_party(ex, actor_id)
    return ex


def _overdue_ids(qs, now: datetime) -> list[int]:
    return list(
        qs.filter(state=lifecycle.ACCEPTED, completion_deadline__lt=now).values_list('id', flat=True)
    )


def list_exchanges(hospital, *, role: Optional[str] = None, state: Optional[str] = None,
                   page: int = 1, page_size: int = 20, now: Optional[datetime] = None):
    hid = _hospital_id(hospital)
    now = now or timezone.now()
    if role == ROLE_SEEKER:
        qs = ExchangeRequest.objects.filter(request__seeker_hospital_id=hid)
    elif role == ROLE_PROVIDER:
        qs = ExchangeRequest.objects.filter(listing__hospital_id=hid)
    else:
        qs = ExchangeRequest.objects.filter(Q(request__seeker_hospital_id=hid) | Q(listing__hospital_id=hid))
    for exchange_id in _overdue_ids(qs, now):
        expire_if_overdue(exchange_id, now)
    if state:
        qs = qs.filter(state=state)
    total = qs.count()
    page = max(1, int(page or 1))
    page_size = min(100, max(1, int(page_size or 20)))
    start = (page - 1) * page_size
    items = qs.select_related(
        'request', 'request__seeker_hospital', 'listing', 'listing__hospital'
    ).order_by('-created_at', '-id')[start:start + page_size]
    return [serialize_exchange(ex) for ex in items], total


def history(exchange_id: int) -> list[dict]:
    return [
        {
            "from": t.from_state,
            "to": t.to_state,
            "actorHospitalId": t.actor_hospital_id,
            "reason": t.reason,
            "timestamp": t.timestamp.isoformat(),
        }
        for t in ExchangeTransition.objects.filter(exchange_id=exchange_id).order_by('timestamp', 'id')
    ]


def expire_overdue_holds(*, listing_ids=None, exclude_hospital_id: Optional[int] = None,
                         now: Optional[datetime] = None) -> int:
    """Expire overdue accepted exchanges, optionally only on some listings.

    Stock held by an exchange past its deadline goes back to the listing
    before anyone else searches or reserves against it.
    """
    now = now or timezone.now()
    qs = ExchangeRequest.objects.all()
    if listing_ids is not None:
        qs = qs.filter(listing_id__in=list(listing_ids))
    if exclude_hospital_id is not None:
        qs = qs.exclude(listing__hospital_id=exclude_hospital_id)
    expired = 0
    for exchange_id in _overdue_ids(qs, now):
        if expire_if_overdue(exchange_id, now):
            expired += 1
    return expired


def sweep_expired(now: Optional[datetime] = None) -> int:
    """Expire every accepted exchange whose completion deadline has passed."""
    expired = expire_overdue_holds(now=now)
    logger.info('exchange_sweep', expired=expired)
    return expired
