from django.core.management.base import BaseCommand

from capacity.services.arrivals import expire_unfulfilled


class Command(BaseCommand):
    help = "Archive unfulfilled scheduled arrivals whose date has passed as no-shows."

    def handle(self, *args, **options):
        expired = expire_unfulfilled()
        self.stdout.write(self.style.SUCCESS(f"Expired {expired} scheduled arrivals"))
