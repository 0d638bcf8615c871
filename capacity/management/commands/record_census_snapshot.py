from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_datetime

from capacity.exceptions import CapacityError
from capacity.scope import scope_for
from capacity.models import Facility
from capacity.services.census import record_scheduled_snapshots


class Command(BaseCommand):
    help = "Record the scheduled census snapshot of every active unit."

    def add_arguments(self, parser):
        parser.add_argument('--facility', help='Only this facility id')
        parser.add_argument('--as-of', dest='as_of', help='ISO timestamp instead of the scheduled instant')

    def handle(self, *args, **options):
        scope = None
        if options.get('facility'):
            facility = Facility.objects.filter(id=options['facility'], is_active=True).first()
            if facility is None:
                raise CommandError(f"no active facility {options['facility']}")
            scope = scope_for(facility)
        as_of = None
        if options.get('as_of'):
            as_of = parse_datetime(options['as_of'])
            if as_of is None:
                raise CommandError(f"invalid timestamp {options['as_of']}")
        try:
            snaps = record_scheduled_snapshots(scope, as_of)
        except CapacityError as exc:
            raise CommandError(exc.message)
        self.stdout.write(self.style.SUCCESS(f"Recorded {len(snaps)} census snapshots"))
