from django.core.management.base import BaseCommand

from capacity.services.events import flush_pending


class Command(BaseCommand):
    help = "Re-publish outbound bed events that were not delivered."

    def add_arguments(self, parser):
        parser.add_argument('--facility', help='Only this facility id')
        parser.add_argument('--limit', type=int, default=500)

    def handle(self, *args, **options):
        delivered, failed = flush_pending(facility_id=options.get('facility'), limit=options['limit'])
        if failed:
            self.stdout.write(self.style.WARNING(f"{failed} events still undelivered"))
        self.stdout.write(self.style.SUCCESS(f"Delivered {delivered} events"))
