from django.core.management.base import BaseCommand

from exchange.services.exchanges import sweep_expired


class Command(BaseCommand):
    help = "Expire accepted exchanges past their completion deadline and release their stock."

    def handle(self, *args, **options):
        n = sweep_expired()
        self.stdout.write(self.style.SUCCESS(f"Expired {n} exchange(s)."))
