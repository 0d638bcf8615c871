"""
Seed a demo facility with units, beds, LOS benchmarks and an API user.

Safe to run repeatedly: existing rows are left as they are.
"""
from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from rest_framework.authtoken.models import Token

from capacity.models import Bed, Facility, LOSBenchmark, Unit
from capacity.scope import scope_for
from capacity.services import registry

UNITS = [
    {
        'code': 'ICU', 'name': 'Intensive Care', 'unit_type': 'icu', 'accepted_acuity': [4, 5],
        'target_census': 8, 'max_census': 10, 'nurse_patient_ratio': '1:2', 'default_los_days': 5.0,
        'rooms': 10, 'capabilities': ['icu', 'telemetry'],
    },
    {
        'code': 'MS-3', 'name': 'Med-Surg 3', 'unit_type': 'medsurg', 'accepted_acuity': [1, 2, 3],
        'target_census': 20, 'max_census': 24, 'nurse_patient_ratio': '1:5', 'default_los_days': 4.0,
        'rooms': 12, 'capabilities': ['standard'],
    },
    {
        'code': 'TELE', 'name': 'Telemetry', 'unit_type': 'stepdown', 'accepted_acuity': [2, 3, 4],
        'target_census': 14, 'max_census': 16, 'nurse_patient_ratio': '1:4', 'default_los_days': 3.0,
        'rooms': 8, 'capabilities': ['telemetry'],
    },
]

BENCHMARKS = [
    {'diagnosis_class': 'sepsis', 'unit': 'ICU', 'mean_los_days': 6.5, 'std_dev_days': 2.5},
    {'diagnosis_class': 'pneumonia', 'unit': None, 'mean_los_days': 4.5, 'std_dev_days': 1.5},
    {'diagnosis_class': 'chf', 'unit': 'TELE', 'mean_los_days': 4.0, 'std_dev_days': 1.2},
    {'diagnosis_class': 'hip_replacement', 'unit': 'MS-3', 'mean_los_days': 3.0, 'std_dev_days': 0.8},
]

AGE_FACTORS = {'0-17': 0.8, '18-64': 1.0, '65-79': 1.2, '80+': 1.4}
ACUITY_FACTORS = {'1': 0.8, '2': 0.9, '3': 1.0, '4': 1.15, '5': 1.3}


class Command(BaseCommand):
    help = 'Seed a demo facility (idempotent)'

    def add_arguments(self, parser):
        parser.add_argument('--tenant', default='demo')
        parser.add_argument('--facility', default='general')
        parser.add_argument('--api-user', dest='api_user', default='adt-feed')

    def handle(self, *args, **options):
        facility, _ = Facility.objects.get_or_create(
            id=options['facility'], defaults={'tenant_id': options['tenant'], 'name': 'General Hospital'}
        )
        scope = scope_for(facility)
        units = {}
        for row in UNITS:
            data = dict(row)
            rooms, capabilities = data.pop('rooms'), data.pop('capabilities')
            unit = Unit.objects.filter(facility=facility, code=data['code']).first()
            if unit is None:
                unit = registry.register_unit(scope, **data)
                self.stdout.write(f"unit {unit.code} created")
            units[unit.code] = unit
            for n in range(1, rooms + 1):
                room = f"{unit.code}-{n:02d}"
                if not Bed.objects.filter(unit=unit, room=room, position='A').exists():
                    extra = ['isolation'] if n % 5 == 0 else []
                    registry.register_bed(scope, unit.pk, room=room, capabilities=capabilities + extra)

        for row in BENCHMARKS:
            unit = units.get(row['unit']) if row['unit'] else None
            LOSBenchmark.objects.get_or_create(
                facility=facility, diagnosis_class=row['diagnosis_class'], unit=unit,
                defaults={
                    'mean_los_days': row['mean_los_days'],
                    'std_dev_days': row['std_dev_days'],
                    'age_factors': AGE_FACTORS,
                    'acuity_factors': ACUITY_FACTORS,
                    'comorbidity_factor': 0.1,
                    'source': 'seed',
                },
            )

        user, created = get_user_model().objects.get_or_create(username=options['api_user'])
        if created:
            user.set_unusable_password()
            user.save()
        token, _ = Token.objects.get_or_create(user=user)
        self.stdout.write(f"api token for {user.username}: {token.key}")
        self.stdout.write(self.style.SUCCESS(
            f"Facility {facility.id}: {len(units)} units, "
            f"{Bed.objects.filter(facility=facility).count()} beds"
        ))
