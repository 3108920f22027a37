from datetime import timedelta
from types import SimpleNamespace

import pytest
from django.core.cache import cache
from django.utils import timezone

from exchange.models import Hospital, HospitalDistance, User
from exchange.services.inventory import ListingInput, upsert_listing


@pytest.fixture(autouse=True)
def _clear_cache():
    # Throttle history lives in the cache.
    cache.clear()
    yield
    cache.clear()


def _link(a, b, km):
    HospitalDistance.objects.create(from_hospital=a, to_hospital=b, distance_km=km)


@pytest.fixture
def world(db):
    """A seeker and three providers offering amoxicillin at 5, 12 and 25 km."""
    seeker = Hospital.objects.create(name='City Hospital', location='Toronto, ON')
    general = Hospital.objects.create(name='General Hospital', location='Toronto, ON')
    community = Hospital.objects.create(name='Community Medical Center', location='Mississauga, ON')
    st_mary = Hospital.objects.create(name='St. Mary Hospital', location='Hamilton, ON')
    _link(seeker, general, 5)
    _link(community, seeker, 12)
    _link(seeker, st_mary, 25)

    expiry = timezone.localdate() + timedelta(days=180)
    exact = upsert_listing(general, ListingInput(name='Amoxicillin 500mg', din='02243465', dosage='500mg',
                                                 quantity=100, expiry=expiry))
    brand = upsert_listing(st_mary, ListingInput(name='Amoxil 500mg', din='02243467', dosage='500mg',
                                                 quantity=75, expiry=expiry))
    weaker = upsert_listing(community, ListingInput(name='Amoxicillin 250mg', din='02243466', dosage='250mg',
                                                    quantity=50, expiry=expiry))
    return SimpleNamespace(
        seeker=seeker, general=general, community=community, st_mary=st_mary,
        exact=exact, brand=brand, weaker=weaker,
    )


@pytest.fixture
def staff(world):
    """One logged-in-able account per hospital, password ``P@ssw0rd1``."""
    def make(username, hospital):
        return User.objects.create_user(username=username, password='P@ssw0rd1', hospital=hospital)
    return SimpleNamespace(
        seeker=make('city', world.seeker),
        general=make('general', world.general),
        st_mary=make('stmary', world.st_mary),
    )
