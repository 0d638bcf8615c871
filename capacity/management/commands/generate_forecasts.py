from django.core.management.base import BaseCommand, CommandError

from capacity.models import Facility
from capacity.scope import scope_for
from capacity.services.forecast import MAX_DAYS_AHEAD, generate_forecasts


class Command(BaseCommand):
    help = "Regenerate availability forecasts for every active unit."

    def add_arguments(self, parser):
        parser.add_argument('--facility', help='Only this facility id')
        parser.add_argument('--days', type=int, default=7)
        parser.add_argument('--workers', type=int, help='Thread pool size (default FORECAST_MAX_WORKERS)')

    def handle(self, *args, **options):
        if not 1 <= options['days'] <= MAX_DAYS_AHEAD:
            raise CommandError(f"--days must be between 1 and {MAX_DAYS_AHEAD}")
        scope = None
        if options.get('facility'):
            facility = Facility.objects.filter(id=options['facility'], is_active=True).first()
            if facility is None:
                raise CommandError(f"no active facility {options['facility']}")
            scope = scope_for(facility)
        outcome = generate_forecasts(scope, options['days'], max_workers=options.get('workers'))
        for unit_id, kind in sorted(outcome.failed.items()):
            self.stderr.write(f"unit {unit_id}: {kind}")
        if outcome.degraded:
            self.stdout.write(self.style.WARNING(
                f"{len(outcome.degraded)} units forecast from stale inputs: {sorted(outcome.degraded)}"
            ))
        self.stdout.write(self.style.SUCCESS(
            f"Forecast {len(outcome.completed)} units, {len(outcome.failed)} failed"
        ))
