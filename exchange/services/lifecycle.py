"""
Exchange request state machine.

``advance`` is a pure function: it looks at the current state and the
requested event and says what would happen, without touching the
database.  The coordinator applies ``Applied`` outcomes and turns the
other two variants into :class:`~exchange.exceptions.InvalidStateTransition`.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from exchange.models import ExchangeRequest

PROPOSED = ExchangeRequest.STATE_PROPOSED
ACCEPTED = ExchangeRequest.STATE_ACCEPTED
DECLINED = ExchangeRequest.STATE_DECLINED
COMPLETED = ExchangeRequest.STATE_COMPLETED
EXPIRED = ExchangeRequest.STATE_EXPIRED
CANCELLED = ExchangeRequest.STATE_CANCELLED

EVENT_ACCEPT = 'accept'
EVENT_DECLINE = 'decline'
EVENT_COMPLETE = 'complete'
EVENT_CANCEL = 'cancel'
EVENT_EXPIRE = 'expire'
EVENTS = (EVENT_ACCEPT, EVENT_DECLINE, EVENT_COMPLETE, EVENT_CANCEL, EVENT_EXPIRE)

TERMINAL_STATES = frozenset({DECLINED, COMPLETED, EXPIRED, CANCELLED})

TRANSITIONS: dict[tuple[str, str], str] = {
    (PROPOSED, EVENT_ACCEPT): ACCEPTED,
    (PROPOSED, EVENT_DECLINE): DECLINED,
    (PROPOSED, EVENT_CANCEL): CANCELLED,
    (ACCEPTED, EVENT_COMPLETE): COMPLETED,
    (ACCEPTED, EVENT_CANCEL): CANCELLED,
    (ACCEPTED, EVENT_EXPIRE): EXPIRED,
}

# States whose entry gives the reservation back without consuming stock.
RELEASING_STATES = frozenset({DECLINED, EXPIRED, CANCELLED})


@dataclass(frozen=True)
class Applied:
    from_state: str
    to_state: str


@dataclass(frozen=True)
class AlreadyTerminal:
    state: str
    event: str


@dataclass(frozen=True)
class NotAllowed:
    state: str
    event: str


Outcome = Union[Applied, AlreadyTerminal, NotAllowed]


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES


def advance(state: str, event: str) -> Outcome:
    if state in TERMINAL_STATES:
        return AlreadyTerminal(state=state, event=event)
    target = TRANSITIONS.get((state, event))
    if target is None:
        return NotAllowed(state=state, event=event)
    return Applied(from_state=state, to_state=target)


def reachable_from(state: str) -> frozenset[str]:
    return frozenset(to for (frm, _), to in TRANSITIONS.items() if frm == state)
