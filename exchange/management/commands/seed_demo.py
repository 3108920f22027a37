from datetime import timedelta

from django.contrib.auth.hashers import make_password
from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils import timezone

from exchange.models import DrugListing, Hospital, HospitalDistance, User
from exchange.services.inventory import ListingInput, upsert_listing

SEEKER = ("City Hospital", "Toronto, ON")

# (hospital, location, km from the seeker, listing)
PROVIDERS = [
    ("General Hospital", "Toronto, ON", 5.2,
     ListingInput(name="Amoxicillin 500mg", din="02243465", dosage="500mg", quantity=100)),
    ("Community Medical Center", "Mississauga, ON", 12.7,
     ListingInput(name="Amoxicillin 250mg", din="02243466", dosage="250mg", quantity=50)),
    ("St. Mary Hospital", "Hamilton, ON", 25.3,
     ListingInput(name="Amoxil 500mg", din="02243467", dosage="500mg", quantity=75)),
]


class Command(BaseCommand):
    help = "Create demo hospitals, distances, staff accounts and surplus listings (idempotent)."

    def add_arguments(self, parser):
        parser.add_argument("--password", default="demo12345", help="password for the demo accounts")

    @transaction.atomic
    def handle(self, *args, **opts):
        password = make_password(opts["password"])
        seeker, _ = Hospital.objects.get_or_create(name=SEEKER[0], defaults={"location": SEEKER[1]})
        self._ensure_user("city", seeker, password)

        expiry = timezone.localdate() + timedelta(days=180)
        for index, (name, location, km, listing) in enumerate(PROVIDERS, start=1):
            hospital, _ = Hospital.objects.get_or_create(name=name, defaults={"location": location})
            self._ensure_user(f"provider{index}", hospital, password)
            HospitalDistance.objects.update_or_create(
                from_hospital=seeker, to_hospital=hospital, defaults={"distance_km": km}
            )
            if not DrugListing.objects.filter(hospital=hospital, din=listing.din, active=True).exists():
                upsert_listing(hospital, ListingInput(
                    name=listing.name, din=listing.din, dosage=listing.dosage,
                    quantity=listing.quantity, expiry=expiry,
                ))
            self.stdout.write(self.style.SUCCESS(f"ok: {name} ({km} km)"))
        self.stdout.write(self.style.SUCCESS("Demo data ensured."))

    def _ensure_user(self, username, hospital, password):
        u, created = User.objects.get_or_create(
            username=username,
            defaults={"hospital": hospital, "password": password, "is_active": True},
        )
        if not created:
            u.hospital = hospital
            u.password = password
            u.is_active = True
            u.save(update_fields=["hospital", "password", "is_active"])
