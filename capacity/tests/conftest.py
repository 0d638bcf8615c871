from datetime import datetime, timedelta, timezone as dt_timezone

import pytest
from django.core.cache import cache

from capacity.models import Facility, LOSBenchmark
from capacity.scope import FacilityScope
from capacity.services import registry

# Monday
T0 = datetime(2025, 3, 3, 8, 0, tzinfo=dt_timezone.utc)


@pytest.fixture(autouse=True)
def engine_settings(settings):
    settings.TIME_ZONE = 'UTC'
    settings.FORECAST_MAX_WORKERS = 1
    settings.FORECAST_CACHE_SECONDS = 0
    settings.FORECAST_SEASONAL_MODE = 'off'
    settings.PERSISTENCE_RETRY_BACKOFF = 0.001
    settings.LOS_DEFAULT_DAYS = 4.0
    settings.LOS_MIN_HISTORY_SAMPLES = 5
    cache.clear()
    return settings


@pytest.fixture
def facility(db):
    return Facility.objects.create(id='fac-1', tenant_id='tenant-1', name='General')


@pytest.fixture
def scope(facility):
    return FacilityScope(tenant_id='tenant-1', facility_id='fac-1')


@pytest.fixture
def other_scope(db):
    Facility.objects.create(id='fac-2', tenant_id='tenant-1', name='North')
    return FacilityScope(tenant_id='tenant-1', facility_id='fac-2')


@pytest.fixture
def unit(scope):
    return registry.register_unit(
        scope, code='TELE', name='Telemetry', accepted_acuity=[1, 2, 3],
        target_census=10, max_census=12, nurse_patient_ratio='1:4', default_los_days=3.0,
    )


@pytest.fixture
def icu(scope):
    return registry.register_unit(
        scope, code='ICU', name='Intensive Care', accepted_acuity=[3, 4, 5],
        target_census=4, max_census=6, nurse_patient_ratio='1:2',
    )


@pytest.fixture
def telemetry_beds(scope, unit):
    """Two telemetry beds; 101 has been idle longest."""
    return [
        registry.register_bed(scope, unit.pk, room='101', capabilities=['telemetry'], at=T0 - timedelta(days=10)),
        registry.register_bed(scope, unit.pk, room='102', capabilities=['telemetry'], at=T0 - timedelta(days=9)),
    ]


@pytest.fixture
def benchmark(facility, unit):
    def make(diagnosis_class, mean, **extra):
        return LOSBenchmark.objects.create(
            facility=facility, unit=extra.pop('unit', unit), diagnosis_class=diagnosis_class,
            mean_los_days=mean, **extra,
        )
    return make
