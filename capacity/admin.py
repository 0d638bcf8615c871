"""
Django admin registrations for the capacity models.

Reference data (facilities, units, LOS benchmarks) is edited here.
Beds, assignments and everything derived from them are shown read-only
in practice; their state only changes through the engine so that history
and outbound events stay complete.
"""

from django.contrib import admin

from .models import (
    Facility,
    Unit,
    Bed,
    Assignment,
    BedStatusHistory,
    CensusSnapshot,
    LOSBenchmark,
    ScheduledArrival,
    Forecast,
    OutboundEvent,
    AdtMessage,
)


@admin.register(Facility)
class FacilityAdmin(admin.ModelAdmin):
    list_display = ('id', 'name', 'tenant_id', 'is_active', 'created_at')
    search_fields = ('id', 'name', 'tenant_id')


@admin.register(Unit)
class UnitAdmin(admin.ModelAdmin):
    list_display = ('code', 'name', 'facility', 'unit_type', 'target_census', 'max_census', 'is_active')
    list_filter = ('facility', 'unit_type', 'is_active')
    search_fields = ('code', 'name')


@admin.register(Bed)
class BedAdmin(admin.ModelAdmin):
    list_display = ('id', 'unit', 'room', 'position', 'status', 'status_changed_at', 'is_active')
    list_filter = ('status', 'unit', 'is_active')
    search_fields = ('room',)
    readonly_fields = ('status', 'status_changed_at', 'status_notes')


@admin.register(Assignment)
class AssignmentAdmin(admin.ModelAdmin):
    list_display = ('id', 'patient_ref', 'unit', 'bed', 'reason', 'admitted_at', 'discharged_at', 'disposition')
    list_filter = ('unit', 'reason', 'disposition')
    search_fields = ('patient_ref', 'adt_event_id')
    readonly_fields = ('bed', 'unit', 'admitted_at', 'discharged_at', 'disposition', 'transferred_from')


@admin.register(BedStatusHistory)
class BedStatusHistoryAdmin(admin.ModelAdmin):
    list_display = ('bed', 'from_status', 'to_status', 'changed_at', 'duration_minutes')
    list_filter = ('to_status',)


@admin.register(CensusSnapshot)
class CensusSnapshotAdmin(admin.ModelAdmin):
    list_display = ('unit', 'as_of', 'occupied', 'available', 'dirty', 'blocked', 'variance', 'scheduled')
    list_filter = ('unit', 'scheduled')


@admin.register(LOSBenchmark)
class LOSBenchmarkAdmin(admin.ModelAdmin):
    list_display = ('diagnosis_class', 'unit', 'facility', 'mean_los_days', 'std_dev_days', 'is_active')
    list_filter = ('is_active', 'facility')
    search_fields = ('diagnosis_class',)


@admin.register(ScheduledArrival)
class ScheduledArrivalAdmin(admin.ModelAdmin):
    list_display = ('id', 'unit', 'expected_date', 'arrival_type', 'status', 'patient_ref')
    list_filter = ('status', 'unit', 'arrival_type')


@admin.register(Forecast)
class ForecastAdmin(admin.ModelAdmin):
    list_display = ('unit', 'forecast_date', 'days_ahead', 'predicted_available', 'confidence',
                    'degraded', 'is_current', 'actual_available')
    list_filter = ('unit', 'is_current', 'degraded', 'model_version')


@admin.register(OutboundEvent)
class OutboundEventAdmin(admin.ModelAdmin):
    list_display = ('id', 'event_type', 'adt_code', 'occurred_at', 'delivered_at', 'attempts')
    list_filter = ('event_type', 'adt_code')


@admin.register(AdtMessage)
class AdtMessageAdmin(admin.ModelAdmin):
    list_display = ('message_id', 'facility', 'event_type', 'received_at')
    search_fields = ('message_id',)
