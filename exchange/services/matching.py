"""
Candidate ranking for drug requests.

Given a submitted :class:`~exchange.models.DrugRequest`, ``match``
produces the listings worth showing to the seeker, most relevant
first.  Scoring is a weighted sum of name similarity, dosage agreement,
distance and quantity sufficiency; the weights come from the
``EXCHANGE['MATCH_WEIGHTS']`` setting.

Results are computed on iteration and never cached: quantities move
between queries, and ``propose`` re-checks availability anyway.  Accepted
exchanges past their completion deadline are expired first, so their
stock counts as available again.
"""
from __future__ import annotations

import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Callable, Iterator, Optional

import structlog
from django.db.models import Q
from django.utils import timezone
from rapidfuzz.distance import Levenshtein

from exchange.conf import exchange_setting
from exchange.exceptions import InvalidRequest
from exchange.models import DrugListing, DrugRequest, Hospital, HospitalDistance
from exchange.services import exchanges, inventory
from exchange.services.normalizer import Dosage, NormalizedName, normalize

logger = structlog.get_logger(__name__)

DIN_RE = re.compile(r'^\d{8}$')
ORDERINGS = ('relevance', 'distance', 'quantity')
# Listings below this name similarity need a shared token or dosage to qualify.
FUZZY_ADMIT_THRESHOLD = 80.0


class NameMatcher(ABC):
    """Scores how alike two normalised drug names are, 0-100."""

    @abstractmethod
    def similarity(self, query: NormalizedName, tokens: frozenset[str], canonical: str) -> float:
        raise NotImplementedError


class TokenEditMatcher(NameMatcher):
    """Token-set overlap blended with Levenshtein similarity.

    Identical token sets score 100 regardless of word order.  Otherwise
    the token overlap and the normalised edit similarity of the sorted
    canonical strings are averaged using ``token_weight``.  A token
    counts as shared when it is within ``fuzzy_cutoff`` edit similarity
    of one on the other side, so "amoxicilin" still meets "amoxicillin".
    """

    def __init__(self, token_weight: float = 0.5, fuzzy_cutoff: float = 0.85):
        self.token_weight = token_weight
        self.fuzzy_cutoff = fuzzy_cutoff

    def _shared(self, token: str, others: frozenset[str]) -> bool:
        if token in others:
            return True
        return any(Levenshtein.normalized_similarity(token, o) >= self.fuzzy_cutoff for o in others)

    def similarity(self, query: NormalizedName, tokens: frozenset[str], canonical: str) -> float:
        if not query.tokens or not tokens:
            return 0.0
        if query.tokens == tokens:
            return 100.0
        shared = sum(1 for t in query.tokens if self._shared(t, tokens))
        overlap = shared / max(len(query.tokens), len(tokens))
        edit = Levenshtein.normalized_similarity(' '.join(sorted(query.tokens)), ' '.join(sorted(tokens)))
        return round(100.0 * (self.token_weight * overlap + (1.0 - self.token_weight) * edit), 2)


@dataclass(frozen=True)
class MatchCandidate:
    listing_id: int
    request_id: int
    name_similarity: float
    distance_km: Optional[float]
    composite_score: float
    rank: int
    dosage_match: bool
    available_quantity: int
    expiry: Optional[date]
    created_at: object = field(compare=False, repr=False)
    listing: DrugListing = field(compare=False, repr=False, default=None)


class DistanceLookup:
    """Precomputed distances from one hospital, loaded once per match."""

    def __init__(self, origin_id: int):
        self.origin_id = origin_id
        self._km: dict[int, float] = {}
        rows = HospitalDistance.objects.filter(
            Q(from_hospital_id=origin_id) | Q(to_hospital_id=origin_id)
        ).values_list('from_hospital_id', 'to_hospital_id', 'distance_km')
        for a, b, km in rows:
            other = b if a == origin_id else a
            self._km[other] = km

    def __call__(self, hospital_id: int) -> Optional[float]:
        if hospital_id == self.origin_id:
            return 0.0
        return self._km.get(hospital_id)


def submit_request(hospital: Hospital, *, name: str, quantity: int, dosage: str = '',
                   priority: str = DrugRequest.PRIORITY_MEDIUM,
                   max_distance_km: Optional[float] = None) -> DrugRequest:
    """Persist a seeker's search.  Requests are never edited afterwards."""
    name = (name or '').strip()
    if not name:
        raise InvalidRequest('drug name is required')
    if quantity is None or quantity <= 0:
        raise InvalidRequest('quantity must be positive')
    if priority not in dict(DrugRequest.PRIORITY_CHOICES):
        raise InvalidRequest('unknown priority', priority=priority)
    if max_distance_km is not None and max_distance_km < 0:
        raise InvalidRequest('maxDistanceKm cannot be negative')
    return DrugRequest.objects.create(
        seeker_hospital=hospital,
        raw_text=name,
        raw_dosage=(dosage or '').strip(),
        quantity_needed=quantity,
        priority=priority,
        max_distance_km=max_distance_km,
    )


def _weights() -> dict[str, float]:
    weights = dict(exchange_setting('MATCH_WEIGHTS'))
    for key in ('name', 'dosage', 'distance', 'quantity'):
        weights.setdefault(key, 0.0)
    return weights


def _distance_part(distance_km: Optional[float], horizon_km: float) -> float:
    if distance_km is None:
        return 0.0
    if horizon_km <= 0:
        return 1.0 if distance_km <= 0 else 0.0
    return max(0.0, 1.0 - distance_km / horizon_km)


def composite_score(*, name_similarity: float, dosage_match: bool, distance_km: Optional[float],
                    horizon_km: float, available: int, needed: int,
                    weights: Optional[dict[str, float]] = None) -> float:
    """Weighted score on a 0-100 scale.

    The weighted sum is divided by the total weight, so re-tuned weights
    that no longer add up to one keep the same scale.
    """
    weights = weights or _weights()
    total = sum(weights.values()) or 1.0
    parts = {
        'name': name_similarity / 100.0,
        'dosage': 1.0 if dosage_match else 0.0,
        'distance': _distance_part(distance_km, horizon_km),
        'quantity': 1.0 if available >= needed else available / needed,
    }
    score = sum(weights[k] * parts[k] for k in parts) / total
    return round(100.0 * min(1.0, max(0.0, score)), 2)


def _sort_key(order: str, urgent: bool):
    def far(c: MatchCandidate) -> float:
        return c.distance_km if c.distance_km is not None else math.inf

    def expiry_rank(c: MatchCandidate) -> int:
        return c.expiry.toordinal() if c.expiry else date.max.toordinal()

    if order == 'distance':
        return lambda c: (far(c), -c.composite_score, c.created_at, c.listing_id)
    if order == 'quantity':
        return lambda c: (-c.available_quantity, -c.composite_score, far(c), c.created_at, c.listing_id)
    if urgent:
        # Urgent seekers break ties toward stock that expires sooner and
        # covers more of the need.
        return lambda c: (-c.composite_score, expiry_rank(c), -c.available_quantity,
                          far(c), c.created_at, c.listing_id)
    return lambda c: (-c.composite_score, far(c), c.created_at, c.listing_id)


def match(request: DrugRequest, *, order: str = 'relevance', matcher: Optional[NameMatcher] = None,
          distance_for: Optional[Callable[[int], Optional[float]]] = None,
          today: Optional[date] = None) -> Iterator[MatchCandidate]:
    """Rank listings for ``request``.

    Input is validated immediately; scoring happens when the returned
    iterator is consumed.  No candidates is an empty iterator, not an
    error.
    """
    raw = (request.raw_text or '').strip()
    if not raw:
        raise InvalidRequest('drug name is required')
    if order not in ORDERINGS:
        raise InvalidRequest('unknown ordering', order=order)
    if not request.quantity_needed or request.quantity_needed <= 0:
        raise InvalidRequest('quantity must be positive')

    din = raw if DIN_RE.match(raw) else None
    query = normalize(raw, request.raw_dosage, synonyms=exchange_setting('BRAND_SYNONYMS'))
    if din is None and not query.tokens:
        raise InvalidRequest('drug name has no searchable words', text=raw)

    return _ranked(
        request, query, din,
        order=order,
        matcher=matcher or TokenEditMatcher(),
        distance_for=distance_for or DistanceLookup(request.seeker_hospital_id),
        today=today or timezone.localdate(),
    )


def _ranked(request: DrugRequest, query: NormalizedName, din: Optional[str], *, order: str,
            matcher: NameMatcher, distance_for, today: date) -> Iterator[MatchCandidate]:
    weights = _weights()
    tolerance = exchange_setting('DOSAGE_TOLERANCE')
    max_km = request.max_distance_km
    horizon = max_km if max_km is not None else exchange_setting('DEFAULT_DISTANCE_HORIZON_KM')
    # Overdue holds go back to their listings before availability is read.
    exchanges.expire_overdue_holds(exclude_hospital_id=request.seeker_hospital_id)

    listings = inventory.query(inventory.ListingFilter(
        exclude_hospital_id=request.seeker_hospital_id,
        shareable_only=True,
        available_only=True,
        not_expired_on=today,
        din=din,
    ))

    found: list[MatchCandidate] = []
    for listing in listings.iterator():
        distance = distance_for(listing.hospital_id)
        if max_km is not None and (distance is None or distance > max_km):
            continue

        tokens = frozenset(listing.name_tokens or ())
        listing_dosage = (
            Dosage(listing.dosage_value, listing.dosage_unit) if listing.dosage_value is not None else None
        )
        dosage_match = bool(query.dosage and query.dosage.matches(listing_dosage, tolerance))
        if din is not None:
            similarity = 100.0
        else:
            similarity = matcher.similarity(query, tokens, listing.canonical_name)
            if not (query.tokens & tokens) and not dosage_match and similarity < FUZZY_ADMIT_THRESHOLD:
                continue

        available = listing.quantity_available
        found.append(MatchCandidate(
            listing_id=listing.id,
            request_id=request.id,
            name_similarity=similarity,
            distance_km=distance,
            composite_score=composite_score(
                name_similarity=similarity,
                dosage_match=dosage_match,
                distance_km=distance,
                horizon_km=horizon,
                available=available,
                needed=request.quantity_needed,
                weights=weights,
            ),
            rank=0,
            dosage_match=dosage_match,
            available_quantity=available,
            expiry=listing.expiry,
            created_at=listing.created_at,
            listing=listing,
        ))

    urgent = request.priority in DrugRequest.URGENT_PRIORITIES
    found.sort(key=_sort_key(order, urgent))
    logger.info('match', request_id=request.id, candidates=len(found), order=order, priority=request.priority)
    for position, candidate in enumerate(found, start=1):
        yield replace(candidate, rank=position)
