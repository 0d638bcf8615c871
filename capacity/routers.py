"""
URL mappings for the bed control API.

Read-only queries hang off a unit, inbound ADT events have one endpoint
per event type.  Trailing slashes are omitted.
"""
from django.urls import path

from .views import adt, beds, census, forecast, health

urlpatterns = [
    path('healthz', health.healthz),

    # unit queries
    path('units/<int:unit_id>/census', census.unit_census),
    path('units/<int:unit_id>/turnaround', census.unit_turnaround),
    path('units/<int:unit_id>/forecast', forecast.unit_forecast),
    path('units/<int:unit_id>/accuracy', forecast.unit_accuracy),
    path('units/<int:unit_id>/discharges', forecast.unit_discharges),
    path('units/<int:unit_id>/beds/matched', beds.matched_beds),
    path('units/<int:unit_id>/board', beds.unit_board),
    path('assignments/<int:assignment_id>/los', forecast.assignment_los),

    # bed operations
    path('beds/<int:bed_id>/status', beds.bed_status),

    # inbound ADT
    path('adt/admit', adt.adt_admit),
    path('adt/transfer', adt.adt_transfer),
    path('adt/discharge', adt.adt_discharge),
]
