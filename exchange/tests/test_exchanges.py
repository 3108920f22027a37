import threading
from datetime import timedelta

import pytest
from django.core.management import call_command
from django.db import connection
from django.utils import timezone

from exchange.exceptions import Forbidden, InsufficientQuantity, InvalidRequest, InvalidStateTransition
from exchange.models import (
    Conversation,
    DrugListing,
    ExchangeRequest,
    ExchangeTransition,
    Hospital,
    Message,
    Reservation,
)
from exchange.services import exchanges as coordinator
from exchange.services import inventory, lifecycle
from exchange.services.exchanges import Selection
from exchange.services.inventory import ListingInput
from exchange.services.lifecycle import AlreadyTerminal, Applied, NotAllowed
from exchange.services.matching import match, submit_request


@pytest.fixture
def setup(world):
    """Seeker request against a 50-unit listing at General Hospital."""
    listing = inventory.upsert_listing(world.general, ListingInput(name='Ceftriaxone 1g', quantity=50))
    req = submit_request(world.seeker, name='Ceftriaxone', dosage='1g', quantity=50)
    world.listing = listing
    world.request = req
    world.pick = Selection(listing_id=listing.id, request_id=req.id)
    return world


def _reserved(listing):
    return DrugListing.objects.get(pk=listing.pk).quantity_reserved


def _overdue(ex):
    ExchangeRequest.objects.filter(pk=ex.pk).update(completion_deadline=timezone.now() - timedelta(minutes=1))


# ---------------------------------------------------------------------------
# Pure state machine
# ---------------------------------------------------------------------------

def test_advance_applies_allowed_transitions():
    assert lifecycle.advance(lifecycle.PROPOSED, 'accept') == Applied('proposed', 'accepted')
    assert lifecycle.advance(lifecycle.PROPOSED, 'decline') == Applied('proposed', 'declined')
    assert lifecycle.advance(lifecycle.ACCEPTED, 'complete') == Applied('accepted', 'completed')
    assert lifecycle.advance(lifecycle.ACCEPTED, 'expire') == Applied('accepted', 'expired')


def test_advance_rejects_out_of_order_events():
    assert isinstance(lifecycle.advance(lifecycle.PROPOSED, 'complete'), NotAllowed)
    assert isinstance(lifecycle.advance(lifecycle.PROPOSED, 'expire'), NotAllowed)
    assert isinstance(lifecycle.advance(lifecycle.ACCEPTED, 'accept'), NotAllowed)


@pytest.mark.parametrize('state', sorted(lifecycle.TERMINAL_STATES))
def test_terminal_states_accept_no_event(state):
    for event in lifecycle.EVENTS:
        assert lifecycle.advance(state, event) == AlreadyTerminal(state, event)
    assert lifecycle.reachable_from(state) == frozenset()


def test_reachability():
    assert lifecycle.reachable_from(lifecycle.PROPOSED) == {'accepted', 'declined', 'cancelled'}
    assert lifecycle.reachable_from(lifecycle.ACCEPTED) == {'completed', 'expired', 'cancelled'}


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

@pytest.mark.django_db
def test_propose_more_than_total_creates_nothing(setup):
    with pytest.raises(InsufficientQuantity):
        coordinator.propose(setup.pick, 60, hospital=setup.seeker)
    assert _reserved(setup.listing) == 0
    assert not ExchangeRequest.objects.exists()
    assert not Conversation.objects.exists()
    assert not Reservation.objects.exists()


@pytest.mark.django_db
def test_propose_reserves_and_opens_conversation(setup):
    ex = coordinator.propose(setup.pick, 30, hospital=setup.seeker)
    assert ex.state == 'proposed'
    assert ex.reserved_quantity == 30
    assert ex.reservation_token is not None
    assert _reserved(setup.listing) == 30

    conv = Conversation.objects.get(pk=ex.pk)
    notice = Message.objects.get(conversation=conv)
    assert notice.sender_hospital_id is None
    assert 'requested 30 x Ceftriaxone 1g' in notice.content
    t = ExchangeTransition.objects.get(exchange=ex)
    assert (t.from_state, t.to_state, t.actor_hospital_id) == (None, 'proposed', setup.seeker.id)


@pytest.mark.django_db
def test_second_full_proposal_loses(setup):
    coordinator.propose(setup.pick, 50, hospital=setup.seeker)
    with pytest.raises(InsufficientQuantity):
        coordinator.propose(setup.pick, 50, hospital=setup.seeker)
    assert _reserved(setup.listing) == 50
    assert ExchangeRequest.objects.count() == 1


@pytest.mark.django_db
def test_stale_candidate_is_revalidated(setup):
    candidate = next(iter(match(setup.request)))
    assert candidate.available_quantity == 50
    inventory.reserve(setup.listing.id, 30)
    with pytest.raises(InsufficientQuantity):
        coordinator.propose(candidate, 50)
    assert coordinator.propose(candidate, 20).reserved_quantity == 20


@pytest.mark.django_db
def test_propose_guards(setup):
    with pytest.raises(InvalidRequest):
        coordinator.propose(setup.pick, 0)
    with pytest.raises(Forbidden):
        coordinator.propose(setup.pick, 5, hospital=setup.general)
    own = inventory.upsert_listing(setup.seeker, ListingInput(name='Ceftriaxone 1g', quantity=5))
    with pytest.raises(InvalidRequest):
        coordinator.propose(Selection(listing_id=own.id, request_id=setup.request.id), 5)


@pytest.mark.django_db
def test_decline_releases(setup):
    ex = coordinator.propose(setup.pick, 30)
    ex = coordinator.respond(ex.id, 'decline', hospital=setup.general)
    assert ex.state == 'declined'
    assert ex.reserved_quantity == 0
    assert ex.decided_at is not None and ex.closed_at is not None
    assert _reserved(setup.listing) == 0


@pytest.mark.django_db
def test_accept_then_complete_consumes_stock(setup, settings):
    settings.EXCHANGE = {'COMPLETION_WINDOW_DAYS': 7}
    ex = coordinator.propose(setup.pick, 30)
    ex = coordinator.respond(ex.id, 'accept', hospital=setup.general)
    assert ex.state == 'accepted'
    assert ex.completion_deadline - ex.decided_at == timedelta(days=7)
    assert _reserved(setup.listing) == 30

    ex = coordinator.complete(ex.id, hospital=setup.seeker)
    assert ex.state == 'completed'
    listing = DrugListing.objects.get(pk=setup.listing.pk)
    assert (listing.quantity_total, listing.quantity_reserved) == (20, 0)
    assert [t['to'] for t in coordinator.history(ex.id)] == ['proposed', 'accepted', 'completed']


@pytest.mark.django_db
@pytest.mark.parametrize('accept_first', [False, True])
def test_cancel_releases_without_consuming(setup, accept_first):
    ex = coordinator.propose(setup.pick, 30)
    if accept_first:
        coordinator.respond(ex.id, 'accept', hospital=setup.general)
    ex = coordinator.cancel(ex.id, hospital=setup.seeker, reason='found stock locally')
    assert ex.state == 'cancelled'
    listing = DrugListing.objects.get(pk=setup.listing.pk)
    assert (listing.quantity_total, listing.quantity_reserved) == (50, 0)
    last = Message.objects.filter(conversation_id=ex.id).order_by('-seq').first()
    assert last.content == 'Exchange cancelled. Reason: found stock locally'


@pytest.mark.django_db
def test_terminal_reentry_has_no_side_effects(setup):
    ex = coordinator.propose(setup.pick, 30)
    coordinator.respond(ex.id, 'decline')
    transitions = ExchangeTransition.objects.count()
    messages = Message.objects.count()

    for call in (
        lambda: coordinator.respond(ex.id, 'accept'),
        lambda: coordinator.respond(ex.id, 'decline'),
        lambda: coordinator.complete(ex.id),
        lambda: coordinator.cancel(ex.id),
    ):
        with pytest.raises(InvalidStateTransition):
            call()

    assert ExchangeRequest.objects.get(pk=ex.pk).state == 'declined'
    assert _reserved(setup.listing) == 0
    assert ExchangeTransition.objects.count() == transitions
    assert Message.objects.count() == messages


@pytest.mark.django_db
def test_complete_requires_acceptance(setup):
    ex = coordinator.propose(setup.pick, 30)
    with pytest.raises(InvalidStateTransition):
        coordinator.complete(ex.id)
    assert ExchangeRequest.objects.get(pk=ex.pk).state == 'proposed'
    assert _reserved(setup.listing) == 30


@pytest.mark.django_db
def test_role_checks(setup):
    outsider = Hospital.objects.create(name='Elsewhere')
    ex = coordinator.propose(setup.pick, 10)
    with pytest.raises(InvalidRequest):
        coordinator.respond(ex.id, 'maybe', hospital=setup.general)
    with pytest.raises(Forbidden):
        coordinator.respond(ex.id, 'accept', hospital=setup.seeker)
    with pytest.raises(Forbidden):
        coordinator.cancel(ex.id, hospital=outsider)
    with pytest.raises(Forbidden):
        coordinator.get_exchange(ex.id, hospital=outsider)
    assert ExchangeRequest.objects.get(pk=ex.pk).state == 'proposed'


@pytest.mark.django_db
def test_overdue_exchange_is_expired_on_access(setup):
    ex = coordinator.propose(setup.pick, 30)
    coordinator.respond(ex.id, 'accept')
    _overdue(ex)

    seen = coordinator.get_exchange(ex.id)
    assert seen.state == 'expired'
    assert _reserved(setup.listing) == 0
    last = ExchangeTransition.objects.filter(exchange=ex).order_by('-id').first()
    assert (last.from_state, last.to_state, last.actor_hospital_id) == ('accepted', 'expired', None)


@pytest.mark.django_db
def test_completing_an_overdue_exchange_fails_but_expiry_sticks(setup):
    ex = coordinator.propose(setup.pick, 30)
    coordinator.respond(ex.id, 'accept')
    _overdue(ex)
    with pytest.raises(InvalidStateTransition):
        coordinator.complete(ex.id, hospital=setup.general)
    assert ExchangeRequest.objects.get(pk=ex.pk).state == 'expired'
    assert DrugListing.objects.get(pk=setup.listing.pk).quantity_total == 50


@pytest.mark.django_db
def test_sweep_expires_only_overdue(setup):
    first = coordinator.propose(setup.pick, 10)
    second = coordinator.propose(setup.pick, 10)
    third = coordinator.propose(setup.pick, 10)
    for ex in (first, second, third):
        coordinator.respond(ex.id, 'accept')
    _overdue(first)
    _overdue(second)

    assert coordinator.sweep_expired() == 2
    states = dict(ExchangeRequest.objects.values_list('id', 'state'))
    assert states == {first.id: 'expired', second.id: 'expired', third.id: 'accepted'}
    assert _reserved(setup.listing) == 10
    assert coordinator.sweep_expired() == 0


@pytest.mark.django_db
def test_sweep_command(setup, capsys):
    ex = coordinator.propose(setup.pick, 10)
    coordinator.respond(ex.id, 'accept')
    _overdue(ex)
    call_command('sweep_exchanges')
    assert 'Expired 1 exchange(s).' in capsys.readouterr().out


@pytest.mark.django_db
def test_list_exchanges_by_role_and_lazy_expiry(setup):
    ex = coordinator.propose(setup.pick, 10)
    coordinator.respond(ex.id, 'accept')
    _overdue(ex)

    data, total = coordinator.list_exchanges(setup.seeker, role='seeker')
    assert total == 1
    assert data[0]['state'] == 'expired'
    assert data[0]['providerHospitalName'] == 'General Hospital'
    assert coordinator.list_exchanges(setup.seeker, role='provider') == ([], 0)
    _, provider_total = coordinator.list_exchanges(setup.general, state='expired')
    assert provider_total == 1


@pytest.mark.django_db
def test_overdue_hold_is_freed_before_searching(setup):
    ex = coordinator.propose(setup.pick, 50)
    coordinator.respond(ex.id, 'accept')
    _overdue(ex)

    late = submit_request(setup.st_mary, name='Ceftriaxone', dosage='1g', quantity=50)
    found = [c for c in match(late) if c.listing_id == setup.listing.id]
    assert [c.available_quantity for c in found] == [50]
    assert ExchangeRequest.objects.get(pk=ex.pk).state == 'expired'


@pytest.mark.django_db
def test_overdue_hold_is_freed_before_proposing(setup):
    ex = coordinator.propose(setup.pick, 50)
    coordinator.respond(ex.id, 'accept')
    _overdue(ex)

    again = coordinator.propose(setup.pick, 50, hospital=setup.seeker)
    assert again.state == 'proposed'
    assert ExchangeRequest.objects.get(pk=ex.pk).state == 'expired'
    assert _reserved(setup.listing) == 50


def _race(*calls):
    """Run the callables at the same moment; return what each produced."""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def run(i, call):
        try:
            barrier.wait()
            outcomes[i] = call()
        except Exception as e:  # collected for the assertions below
            outcomes[i] = e
        finally:
            connection.close()

    threads = [threading.Thread(target=run, args=(i, c)) for i, c in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


@pytest.mark.django_db(transaction=True)
def test_concurrent_full_proposals_have_one_winner(setup):
    outcomes = _race(lambda: coordinator.propose(setup.pick, 50), lambda: coordinator.propose(setup.pick, 50))
    won = [o for o in outcomes if isinstance(o, ExchangeRequest)]
    lost = [o for o in outcomes if isinstance(o, InsufficientQuantity)]
    assert (len(won), len(lost)) == (1, 1)
    assert _reserved(setup.listing) == 50
    assert ExchangeRequest.objects.count() == 1
    assert Reservation.objects.filter(state=Reservation.STATE_HELD).count() == 1


@pytest.mark.django_db(transaction=True)
def test_conflicting_transitions_first_committer_wins(setup):
    ex = coordinator.propose(setup.pick, 30)
    outcomes = _race(
        lambda: coordinator.respond(ex.id, 'decline', hospital=setup.general),
        lambda: coordinator.cancel(ex.id, hospital=setup.seeker),
    )
    rejected = [o for o in outcomes if isinstance(o, InvalidStateTransition)]
    applied = [o for o in outcomes if isinstance(o, ExchangeRequest)]
    assert (len(applied), len(rejected)) == (1, 1)

    final = ExchangeRequest.objects.get(pk=ex.pk)
    assert final.state == applied[0].state
    assert final.state in ('declined', 'cancelled')
    assert _reserved(setup.listing) == 0
    assert [t['to'] for t in coordinator.history(ex.id)] == ['proposed', final.state]
