import threading
from datetime import date, timedelta

import pytest

from capacity import api
from capacity.exceptions import InvalidRequest
from capacity.models import CensusSnapshot, Forecast
from capacity.services import arrivals, assignments, census, forecast, registry

from .conftest import T0

pytestmark = pytest.mark.django_db


@pytest.fixture
def ward(scope, unit, benchmark):
    """Four beds, two occupied: one leaving tomorrow, one in three days."""
    for room in ('201', '202', '203', '204'):
        registry.register_bed(scope, unit.pk, room=room, at=T0 - timedelta(days=10))
    benchmark('chf', 2.0)
    benchmark('sepsis', 4.0)
    admitted = T0 - timedelta(days=1)
    assignments.assign_bed(scope, 'P1', unit.pk, (), 2, at=admitted, diagnosis_class='chf')
    assignments.assign_bed(scope, 'P2', unit.pk, (), 2, at=admitted, diagnosis_class='sepsis')
    arrivals.schedule_arrival(scope, unit.pk, date(2025, 3, 5), patient_ref='P3')
    census.snapshot(scope, unit.pk, T0 - timedelta(hours=1))
    return unit


def test_prediction_follows_discharges_and_arrivals(scope, ward):
    run = forecast.generate_forecast(scope, ward.pk, 4, now=T0)
    assert run.warnings == []
    assert [f.forecast_date for f in run.forecasts] == [
        date(2025, 3, 4), date(2025, 3, 5), date(2025, 3, 6), date(2025, 3, 7),
    ]
    assert [f.predicted_available for f in run.forecasts] == [3, 2, 3, 3]
    first = run.forecasts[0]
    assert first.band_width == pytest.approx(3.5)
    assert (first.lower_bound, first.upper_bound) == (1, 4)
    assert first.confidence == pytest.approx(0.9)
    assert not first.degraded
    assert first.factors['expectedDischarges'] == 1


def test_band_widens_and_confidence_decays_with_horizon(scope, ward):
    rows = forecast.generate_forecast(scope, ward.pk, 10, now=T0).forecasts
    widths = [f.band_width for f in rows]
    confidences = [f.confidence for f in rows]
    assert widths == sorted(widths)
    assert confidences == sorted(confidences, reverse=True)
    assert min(confidences) >= 0.3
    assert all(0 <= f.lower_bound <= f.predicted_available <= f.upper_bound <= 4 for f in rows)


def test_days_ahead_bounds(scope, unit):
    with pytest.raises(InvalidRequest):
        forecast.generate_forecast(scope, unit.pk, 0, now=T0)
    with pytest.raises(InvalidRequest):
        forecast.generate_forecast(scope, unit.pk, forecast.MAX_DAYS_AHEAD + 1, now=T0)


def test_missing_census_degrades_forecast(scope, unit, telemetry_beds):
    result = api.forecast(scope, unit.pk, 2, now=T0)
    assert result.ok
    assert result.warnings
    rows = result.value
    assert all(f.degraded for f in rows)
    assert rows[0].band_width == pytest.approx(3.5 * 1.5)
    assert rows[0].confidence == pytest.approx(0.6)


def test_fallback_los_degrades_forecast(scope, unit, telemetry_beds):
    census.snapshot(scope, unit.pk, T0 - timedelta(hours=1))
    assignments.assign_bed(scope, 'A', unit.pk, (), 2, at=T0 - timedelta(minutes=30))
    run = forecast.generate_forecast(scope, unit.pk, 1, now=T0)
    assert run.degraded
    assert 'LOS reference data' in run.warnings[0]


def test_old_census_degrades_forecast(scope, unit, telemetry_beds):
    census.snapshot(scope, unit.pk, T0 - timedelta(hours=48))
    run = forecast.generate_forecast(scope, unit.pk, 1, now=T0)
    assert run.degraded


def test_regeneration_supersedes(scope, ward):
    forecast.generate_forecast(scope, ward.pk, 3, now=T0)
    forecast.generate_forecast(scope, ward.pk, 3, now=T0 + timedelta(hours=1))
    assert Forecast.objects.filter(unit=ward, is_current=True).count() == 3
    old = Forecast.objects.filter(unit=ward, is_current=False)
    assert old.count() == 3
    assert all(f.superseded_at == T0 + timedelta(hours=1) for f in old)


def test_regeneration_racing_another_writer(monkeypatch, scope, ward):
    real_bulk_create = Forecast.objects.bulk_create
    calls = []

    def interleaved(rows, *args, **kwargs):
        calls.append(len(rows))
        if len(calls) == 1:
            # another regeneration commits its rows after our supersede ran
            rival = Forecast(**{
                f.attname: getattr(rows[0], f.attname)
                for f in Forecast._meta.concrete_fields if not f.primary_key
            })
            rival.save()
        return real_bulk_create(rows, *args, **kwargs)

    monkeypatch.setattr(Forecast.objects, 'bulk_create', interleaved)
    result = api.forecast(scope, ward.pk, 3, now=T0)

    assert result.ok
    assert calls == [3, 3]
    current = Forecast.objects.filter(unit=ward, is_current=True)
    assert current.count() == 3
    assert sorted(f.forecast_date for f in current) == [date(2025, 3, 4), date(2025, 3, 5), date(2025, 3, 6)]


def test_get_forecast_reads_without_generating(scope, ward):
    today = date(2025, 3, 3)
    assert forecast.get_forecast(scope, ward.pk, 3, today=today) == []
    assert Forecast.objects.count() == 0
    forecast.generate_forecast(scope, ward.pk, 3, now=T0)
    data = forecast.get_forecast(scope, ward.pk, 3, today=today)
    assert [d['date'] for d in data] == ['2025-03-04', '2025-03-05', '2025-03-06']
    assert data[0]['predictedAvailable'] == 3


def test_get_forecast_is_cached_until_regenerated(settings, scope, ward):
    settings.FORECAST_CACHE_SECONDS = 60
    today = date(2025, 3, 3)
    forecast.generate_forecast(scope, ward.pk, 2, now=T0)
    first = forecast.get_forecast(scope, ward.pk, 2, today=today)
    forecast.generate_forecast(scope, ward.pk, 2, now=T0 + timedelta(hours=1))
    second = forecast.get_forecast(scope, ward.pk, 2, today=today)
    assert first[0]['id'] != second[0]['id']


def test_static_seasonal_adjustment(settings, scope, ward):
    settings.FORECAST_SEASONAL_MODE = 'static'
    # Tuesday -1
    settings.FORECAST_WEEKDAY_ADJUSTMENT = [0, -1, 0, 0, 0, 0, 0]
    rows = forecast.generate_forecast(scope, ward.pk, 2, now=T0).forecasts
    assert rows[0].predicted_available == 2
    assert rows[0].factors['seasonalAdjustment'] == -1.0
    assert rows[1].predicted_available == 2


def test_unknown_seasonal_mode(settings, scope, unit):
    settings.FORECAST_SEASONAL_MODE = 'lunar'
    with pytest.raises(InvalidRequest):
        forecast.seasonal_adjustment(scope, unit.pk, 0, now=T0)


def test_historical_weekday_profile(settings, scope, facility, unit):
    settings.FORECAST_SEASONAL_MODE = 'historical'
    for week in range(1, 5):
        monday = T0 - timedelta(weeks=week)
        CensusSnapshot.objects.create(facility=facility, unit=unit, as_of=monday, scheduled=True, available=2)
        CensusSnapshot.objects.create(
            facility=facility, unit=unit, as_of=monday + timedelta(days=1), scheduled=True, available=6,
        )
    assert forecast.seasonal_adjustment(scope, unit.pk, 0, now=T0) == pytest.approx(-2.0)
    assert forecast.seasonal_adjustment(scope, unit.pk, 1, now=T0) == pytest.approx(2.0)
    assert forecast.seasonal_adjustment(scope, unit.pk, 2, now=T0) == 0.0


def test_batch_runs_every_active_unit(scope, unit, icu, telemetry_beds):
    outcome = forecast.generate_forecasts(scope, 2, now=T0)
    assert sorted(outcome.completed) == sorted([unit.pk, icu.pk])
    assert sorted(outcome.degraded) == sorted([unit.pk, icu.pk])
    assert not outcome.failed
    assert not outcome.cancelled


def test_cancelled_batch_skips_remaining_units(scope, unit, icu):
    cancel = threading.Event()
    cancel.set()
    outcome = forecast.generate_forecasts(scope, 2, now=T0, cancel_event=cancel)
    assert outcome.cancelled
    assert sorted(outcome.skipped) == sorted([unit.pk, icu.pk])
    assert Forecast.objects.count() == 0


def test_batch_records_unit_failures(monkeypatch, scope, unit, icu):
    real = forecast.generate_forecast

    def failing(sc, unit_id, days_ahead, *, now=None):
        if unit_id == icu.pk:
            raise InvalidRequest('broken unit')
        return real(sc, unit_id, days_ahead, now=now)

    monkeypatch.setattr(forecast, 'generate_forecast', failing)
    outcome = forecast.generate_forecasts(scope, 1, now=T0)
    assert outcome.failed == {icu.pk: 'InvalidRequest'}
    assert outcome.completed == [unit.pk]


def test_prediction_accuracy(scope, facility, unit):
    for i, (actual, variance) in enumerate([(4, 2), (4, -2), (4, 1), (4, 0)]):
        CensusSnapshot.objects.create(
            facility=facility, unit=unit, as_of=T0 - timedelta(days=4 - i),
            available=actual, predicted_available=actual - variance, variance=variance,
        )
    data = forecast.prediction_accuracy(scope, unit.pk, now=T0)
    assert data['samples'] == 4
    assert data['meanError'] == 0.25
    assert data['meanAbsoluteError'] == 1.25
    assert data['accuracyPercent'] == 68.8
    assert data['improving'] is True


def test_prediction_accuracy_without_samples(scope, unit):
    data = forecast.prediction_accuracy(scope, unit.pk, now=T0)
    assert data['samples'] == 0
    assert data['meanAbsoluteError'] is None
