"""
Inventory index: surplus listings and the reservations held against them.

All quantity bookkeeping goes through this module.  ``reserve``,
``release`` and ``consume`` are written as conditional UPDATEs on a
single row (compare-and-swap), so two callers racing for the same
listing can never jointly push ``quantity_reserved`` past
``quantity_total`` and nothing ever waits on a lock held by another
listing.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Mapping, Optional

import bleach
import structlog
from django.db import transaction
from django.db.models import F, Q, QuerySet
from django.utils import timezone
from django.utils.dateparse import parse_date

from exchange.conf import exchange_setting
from exchange.exceptions import Forbidden, InsufficientQuantity, InvalidRequest, NotFound
from exchange.models import DrugListing, Hospital, Reservation
from exchange.services.audit import log_action
from exchange.services.normalizer import normalize

logger = structlog.get_logger(__name__)

NAME_FIELDS = ('drug_name', 'drugName', 'name')


@dataclass(frozen=True)
class ListingInput:
    """Validated listing fields as submitted by the form or an import row."""
    name: str
    quantity: int
    din: str = ''
    dosage: str = ''
    expiry: Optional[date] = None
    shareable: bool = True
    notes: str = ''


@dataclass(frozen=True)
class ReservationToken:
    token: uuid.UUID
    listing_id: int
    quantity: int


@dataclass(frozen=True)
class ListingFilter:
    hospital_id: Optional[int] = None
    exclude_hospital_id: Optional[int] = None
    shareable_only: bool = False
    available_only: bool = False
    include_inactive: bool = False
    not_expired_on: Optional[date] = None
    din: Optional[str] = None
    q: Optional[str] = None


@dataclass
class BulkImportResult:
    created: list[int] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


def _apply_normalized(listing: DrugListing, data: ListingInput) -> None:
    norm = normalize(data.name, data.dosage, synonyms=exchange_setting('BRAND_SYNONYMS'))
    listing.raw_name = data.name
    listing.canonical_name = norm.canonical
    listing.name_tokens = sorted(norm.tokens)
    listing.dosage = data.dosage or (str(norm.dosage) if norm.dosage else '')
    listing.dosage_value = norm.dosage.value if norm.dosage else None
    listing.dosage_unit = norm.dosage.unit if norm.dosage else ''
    listing.din = (data.din or '').strip()
    listing.expiry = data.expiry
    listing.shareable = data.shareable
    listing.notes = bleach.clean((data.notes or '').strip(), strip=True)


def upsert_listing(hospital: Hospital, data: ListingInput, *, listing_id: Optional[int] = None,
                   user=None) -> DrugListing:
    """Create a listing, or update one owned by ``hospital``.

    Lowering ``quantity_total`` below what is already reserved is
    rejected; reservations are only given back through ``release``.
    """
    if not (data.name or '').strip():
        raise InvalidRequest('drug name is required')
    if data.quantity is None or data.quantity <= 0:
        raise InvalidRequest('quantity must be positive')

    if listing_id is None:
        listing = DrugListing(hospital=hospital, quantity_total=data.quantity)
        _apply_normalized(listing, data)
        listing.save()
        action = 'listing_create'
    else:
        with transaction.atomic():
            listing = DrugListing.objects.select_for_update().filter(pk=listing_id, active=True).first()
            if listing is None:
                raise NotFound('listing not found', listing_id=listing_id)
            if listing.hospital_id != hospital.id:
                raise Forbidden('listing belongs to another hospital', listing_id=listing_id)
            if data.quantity < listing.quantity_reserved:
                raise InvalidRequest(
                    'quantity cannot drop below the reserved amount',
                    listing_id=listing_id, reserved=listing.quantity_reserved,
                )
            _apply_normalized(listing, data)
            listing.quantity_total = data.quantity
            listing.save()
        action = 'listing_update'

    log_action(user=user, action=action, object_type='listing', object_id=listing.id,
               detail={'canonical': listing.canonical_name, 'quantity': listing.quantity_total})
    logger.info(action, listing_id=listing.id, hospital_id=hospital.id, canonical=listing.canonical_name)
    return listing


def remove_listing(listing_id: int, *, hospital: Optional[Hospital] = None, user=None) -> bool:
    """Withdraw a listing from matching.

    Exchanges already holding reservations against it keep them and can
    still complete.  Returns False when the listing was already removed.
    """
    qs = DrugListing.objects.filter(pk=listing_id)
    listing = qs.first()
    if listing is None:
        raise NotFound('listing not found', listing_id=listing_id)
    if hospital is not None and listing.hospital_id != hospital.id:
        raise Forbidden('listing belongs to another hospital', listing_id=listing_id)
    changed = qs.filter(active=True).update(active=False, updated_at=timezone.now())
    if changed:
        log_action(user=user, action='listing_remove', object_type='listing', object_id=listing_id)
        logger.info('listing_remove', listing_id=listing_id)
    return bool(changed)


def reserve(listing_id: int, quantity: int) -> ReservationToken:
    """Hold ``quantity`` units of a listing or fail immediately.

    The availability check and the increment are one UPDATE statement,
    so the loser of a race sees zero affected rows and gets
    :class:`InsufficientQuantity` instead of over-committing.
    """
    if quantity is None or quantity <= 0:
        raise InvalidRequest('quantity must be positive')
    with transaction.atomic():
        updated = (
            DrugListing.objects
            .filter(pk=listing_id, active=True, shareable=True,
                    quantity_total__gte=F('quantity_reserved') + quantity)
            .update(quantity_reserved=F('quantity_reserved') + quantity, updated_at=timezone.now())
        )
        if not updated:
            listing = DrugListing.objects.filter(pk=listing_id).first()
            if listing is None:
                raise NotFound('listing not found', listing_id=listing_id)
            logger.info('reserve_rejected', listing_id=listing_id, requested=quantity,
                        available=listing.quantity_available)
            raise InsufficientQuantity(
                'not enough stock available',
                listing_id=listing_id, requested=quantity, available=listing.quantity_available,
            )
        res = Reservation.objects.create(listing_id=listing_id, quantity=quantity)
    logger.info('reserve', listing_id=listing_id, quantity=quantity, token=str(res.token))
    return ReservationToken(token=res.token, listing_id=listing_id, quantity=quantity)


def _close_reservation(token, to_state: str) -> Optional[Reservation]:
    # Flip held -> to_state exactly once; None means someone already did.
    token_value = getattr(token, 'token', token)
    try:
        token_value = uuid.UUID(str(token_value))
    except (TypeError, ValueError):
        return None
    flipped = Reservation.objects.filter(token=token_value, state=Reservation.STATE_HELD).update(
        state=to_state, closed_at=timezone.now()
    )
    if not flipped:
        return None
    return Reservation.objects.get(token=token_value)


def release(token) -> bool:
    """Give a held reservation back to the listing.

    Idempotent: unknown, released or consumed tokens are a no-op and
    return False, so failure-recovery paths may call it repeatedly.
    """
    with transaction.atomic():
        res = _close_reservation(token, Reservation.STATE_RELEASED)
        if res is None:
            return False
        DrugListing.objects.filter(pk=res.listing_id).update(
            quantity_reserved=F('quantity_reserved') - res.quantity, updated_at=timezone.now()
        )
    logger.info('release', listing_id=res.listing_id, quantity=res.quantity, token=str(res.token))
    return True


def consume(token) -> bool:
    """Turn a held reservation into a permanent stock decrement."""
    with transaction.atomic():
        res = _close_reservation(token, Reservation.STATE_CONSUMED)
        if res is None:
            return False
        DrugListing.objects.filter(pk=res.listing_id).update(
            quantity_total=F('quantity_total') - res.quantity,
            quantity_reserved=F('quantity_reserved') - res.quantity,
            updated_at=timezone.now(),
        )
    logger.info('consume', listing_id=res.listing_id, quantity=res.quantity, token=str(res.token))
    return True


def query(flt: Optional[ListingFilter] = None) -> QuerySet:
    flt = flt or ListingFilter()
    qs = DrugListing.objects.select_related('hospital')
    if not flt.include_inactive:
        qs = qs.filter(active=True)
    if flt.hospital_id is not None:
        qs = qs.filter(hospital_id=flt.hospital_id)
    if flt.exclude_hospital_id is not None:
        qs = qs.exclude(hospital_id=flt.exclude_hospital_id)
    if flt.shareable_only:
        qs = qs.filter(shareable=True)
    if flt.available_only:
        qs = qs.filter(quantity_total__gt=F('quantity_reserved'))
    if flt.not_expired_on is not None:
        qs = qs.filter(Q(expiry__isnull=True) | Q(expiry__gte=flt.not_expired_on))
    if flt.din:
        qs = qs.filter(din=flt.din)
    if flt.q:
        qs = qs.filter(Q(raw_name__icontains=flt.q) | Q(canonical_name__icontains=flt.q) | Q(din=flt.q))
    return qs.order_by('created_at', 'id')


def _row_value(row: Mapping[str, Any], *keys: str, default=None):
    for k in keys:
        if k in row and row[k] not in (None, ''):
            return row[k]
    return default


def _coerce_bool(value, default: bool = True) -> bool:
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {'1', 'true', 'yes', 'y'}


def listing_input_from_row(row: Mapping[str, Any]) -> ListingInput:
    """Build a :class:`ListingInput` from one already-parsed import row."""
    name = str(_row_value(row, *NAME_FIELDS, default='')).strip()
    if not name:
        raise InvalidRequest('row has no drug name')
    try:
        quantity = int(_row_value(row, 'quantity', 'qty', default=0))
    except (TypeError, ValueError):
        raise InvalidRequest('quantity is not a number')
    expiry_raw = _row_value(row, 'expiry', 'expiry_date', 'expiryDate')
    expiry = None
    if expiry_raw:
        try:
            expiry = expiry_raw if isinstance(expiry_raw, date) else parse_date(str(expiry_raw).strip())
        except ValueError:
            # well formed but impossible, e.g. 2030-02-30
            expiry = None
        if expiry is None:
            raise InvalidRequest('expiry is not a valid date')
    return ListingInput(
        name=name,
        quantity=quantity,
        din=str(_row_value(row, 'din', 'DIN', default='')).strip(),
        dosage=str(_row_value(row, 'dosage', default='')).strip(),
        expiry=expiry,
        shareable=_coerce_bool(_row_value(row, 'shareable', 'isShareable', 'is_shareable')),
        notes=str(_row_value(row, 'notes', default='')),
    )


def bulk_import(hospital: Hospital, rows: Iterable[Mapping[str, Any]], *, user=None) -> BulkImportResult:
    """Create one listing per row; bad rows are reported, not fatal."""
    result = BulkImportResult()
    max_rows = exchange_setting('BULK_IMPORT_MAX_ROWS')
    for index, row in enumerate(rows):
        if index >= max_rows:
            result.errors.append({'row': index, 'error': f'import limited to {max_rows} rows'})
            break
        try:
            data = listing_input_from_row(row)
            with transaction.atomic():
                listing = upsert_listing(hospital, data, user=user)
        except InvalidRequest as e:
            result.errors.append({'row': index, 'error': e.message})
            continue
        result.created.append(listing.id)
    log_action(user=user, action='listing_bulk_import', object_type='hospital', object_id=hospital.id,
               detail={'created': len(result.created), 'errors': len(result.errors)})
    logger.info('listing_bulk_import', hospital_id=hospital.id,
                created=len(result.created), errors=len(result.errors))
    return result
