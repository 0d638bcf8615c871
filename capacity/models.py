"""
Database models for the bed control service.

These models capture the physical bed inventory of a facility, the
binding of patients to beds over time and the derived series the
predictive side of the system consumes: census snapshots, length of
stay benchmarks, known future demand and availability forecasts.

Every row is owned by a :class:`Facility`; services always filter by
the facility of the caller's scope so no query crosses a facility
boundary.  Nothing here is ever deleted: units and beds are
deactivated, assignments are closed, forecasts are superseded and
scheduled arrivals are archived.
"""
from __future__ import annotations

from django.db import models
from django.db.models import F, Q
from django.utils import timezone


class Facility(models.Model):
    """A hospital facility inside a tenant.  Root of every scope."""
    id = models.CharField(max_length=64, primary_key=True)
    tenant_id = models.CharField(max_length=64, db_index=True)
    name = models.CharField(max_length=255)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.name} ({self.id})"


class Unit(models.Model):
    """A care area such as ICU or Med-Surg.

    ``accepted_acuity`` holds the ordered set of acuity levels (1 = lowest)
    the unit takes.  ``nurse_patient_ratio`` is an input signal only, e.g.
    ``"1:4"``.
    """
    facility = models.ForeignKey(Facility, on_delete=models.PROTECT, related_name='units')
    code = models.CharField(max_length=32, help_text="Short unit code, e.g. 'ICU-A'")
    name = models.CharField(max_length=255)
    unit_type = models.CharField(max_length=32, blank=True)
    accepted_acuity = models.JSONField(default=list)
    target_census = models.PositiveIntegerField(default=0)
    max_census = models.PositiveIntegerField(default=0)
    nurse_patient_ratio = models.CharField(max_length=16, blank=True)
    # Last-resort LOS (days) when neither a benchmark nor unit history exists
    default_los_days = models.FloatField(null=True, blank=True)
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['facility', 'code'], name='uq_unit_code_facility'),
            models.CheckConstraint(
                condition=Q(target_census__lte=F('max_census')), name='ck_unit_target_le_max'
            ),
        ]

    def accepts(self, acuity: int) -> bool:
        return int(acuity) in {int(a) for a in self.accepted_acuity or []}

    def patients_per_nurse(self) -> int | None:
        """Parse ``"1:4"`` into ``4``; ``None`` when not configured."""
        if not self.nurse_patient_ratio or ':' not in self.nurse_patient_ratio:
            return None
        try:
            nurses, patients = (int(p) for p in self.nurse_patient_ratio.split(':', 1))
        except ValueError:
            return None
        if nurses <= 0 or patients <= 0:
            return None
        return max(1, patients // nurses)

    def __str__(self) -> str:
        return f"{self.name} ({self.code})"


class Bed(models.Model):
    """One physical bed slot with its current status."""
    STATUS_AVAILABLE = 'available'
    STATUS_OCCUPIED = 'occupied'
    STATUS_DIRTY = 'dirty'
    STATUS_BLOCKED = 'blocked'
    STATUS_MAINTENANCE = 'maintenance'
    STATUS_CHOICES = (
        (STATUS_AVAILABLE, 'available'),
        (STATUS_OCCUPIED, 'occupied'),
        (STATUS_DIRTY, 'dirty'),
        (STATUS_BLOCKED, 'blocked'),
        (STATUS_MAINTENANCE, 'maintenance'),
    )

    # Capability tags; a bed may carry several
    CAP_STANDARD = 'standard'
    CAP_BARIATRIC = 'bariatric'
    CAP_PEDIATRIC = 'pediatric'
    CAP_ICU = 'icu'
    CAP_ISOLATION = 'isolation'
    CAP_TELEMETRY = 'telemetry'
    CAP_NEGATIVE_PRESSURE = 'negative_pressure'
    CAPABILITIES = (
        CAP_STANDARD, CAP_BARIATRIC, CAP_PEDIATRIC, CAP_ICU,
        CAP_ISOLATION, CAP_TELEMETRY, CAP_NEGATIVE_PRESSURE,
    )

    facility = models.ForeignKey(Facility, on_delete=models.PROTECT, related_name='beds')
    unit = models.ForeignKey(Unit, on_delete=models.PROTECT, related_name='beds')
    room = models.CharField(max_length=32)
    position = models.CharField(max_length=16, default='A')
    capabilities = models.JSONField(default=list)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_AVAILABLE, db_index=True)
    status_changed_at = models.DateTimeField(default=timezone.now)
    status_notes = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['unit', 'room', 'position'], name='uq_bed_label_unit'),
        ]
        indexes = [
            models.Index(fields=['unit', 'status', 'status_changed_at']),
        ]

    @property
    def label(self) -> str:
        return f"{self.room}-{self.position}"

    def has_capabilities(self, required) -> bool:
        return set(required or ()) <= set(self.capabilities or ())

    def __str__(self) -> str:
        return f"Bed {self.label} [{self.status}]"


class Assignment(models.Model):
    """A patient bound to a bed over an interval.

    Open while ``discharged_at`` is null; closing is terminal.
    """
    REASON_ADMISSION = 'admission'
    REASON_TRANSFER_IN = 'transfer_in'
    REASON_PATIENT_REQUEST = 'patient_request'
    REASON_CHOICES = (
        (REASON_ADMISSION, 'admission'),
        (REASON_TRANSFER_IN, 'transfer in'),
        (REASON_PATIENT_REQUEST, 'patient request'),
    )

    DISPOSITION_HOME = 'home'
    DISPOSITION_SNF = 'snf'
    DISPOSITION_REHAB = 'rehab'
    DISPOSITION_AMA = 'ama'
    DISPOSITION_EXPIRED = 'expired'
    DISPOSITION_TRANSFER = 'transfer'
    DISPOSITION_OTHER = 'other'
    DISPOSITION_CHOICES = (
        (DISPOSITION_HOME, 'home'),
        (DISPOSITION_SNF, 'skilled nursing facility'),
        (DISPOSITION_REHAB, 'rehab'),
        (DISPOSITION_AMA, 'against medical advice'),
        (DISPOSITION_EXPIRED, 'expired'),
        (DISPOSITION_TRANSFER, 'transfer'),
        (DISPOSITION_OTHER, 'other'),
    )

    facility = models.ForeignKey(Facility, on_delete=models.PROTECT, related_name='assignments')
    bed = models.ForeignKey(Bed, on_delete=models.PROTECT, related_name='assignments')
    # Denormalised so census and LOS queries never join through beds
    unit = models.ForeignKey(Unit, on_delete=models.PROTECT, related_name='assignments')
    patient_ref = models.CharField(max_length=64, db_index=True, help_text="Opaque external patient id")
    reason = models.CharField(max_length=20, choices=REASON_CHOICES, default=REASON_ADMISSION)
    acuity = models.PositiveSmallIntegerField(default=1)
    diagnosis_class = models.CharField(max_length=64, blank=True)
    age = models.PositiveSmallIntegerField(null=True, blank=True)
    comorbidity_count = models.PositiveSmallIntegerField(default=0)
    admitted_at = models.DateTimeField(default=timezone.now)
    expected_discharge_at = models.DateTimeField(null=True, blank=True)
    discharged_at = models.DateTimeField(null=True, blank=True)
    disposition = models.CharField(max_length=16, choices=DISPOSITION_CHOICES, blank=True)
    transferred_from = models.ForeignKey(
        'self', null=True, blank=True, on_delete=models.SET_NULL, related_name='transferred_to'
    )
    adt_event_id = models.CharField(max_length=64, blank=True)
    # patient_ref while open, NULL once closed; unique without a partial index
    open_patient_key = models.CharField(max_length=64, null=True, blank=True, editable=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['facility', 'open_patient_key'], name='uq_open_patient_key'),
            models.UniqueConstraint(
                fields=['bed'], condition=Q(discharged_at__isnull=True), name='uq_open_assignment_bed'
            ),
            models.UniqueConstraint(
                fields=['facility', 'patient_ref'],
                condition=Q(discharged_at__isnull=True),
                name='uq_open_assignment_patient',
            ),
        ]
        indexes = [
            models.Index(fields=['unit', 'admitted_at']),
            models.Index(fields=['unit', 'discharged_at']),
        ]

    @property
    def is_open(self) -> bool:
        return self.discharged_at is None

    def __str__(self) -> str:
        state = 'open' if self.is_open else 'closed'
        return f"Assignment {self.pk} {self.patient_ref} -> {self.bed_id} ({state})"


class BedStatusHistory(models.Model):
    """Records a status transition for a bed."""
    facility = models.ForeignKey(Facility, on_delete=models.PROTECT, related_name='bed_history')
    bed = models.ForeignKey(Bed, on_delete=models.PROTECT, related_name='history')
    from_status = models.CharField(max_length=16, blank=True)
    to_status = models.CharField(max_length=16)
    changed_at = models.DateTimeField(default=timezone.now)
    reason = models.CharField(max_length=255, blank=True)
    assignment = models.ForeignKey(
        Assignment, null=True, blank=True, on_delete=models.SET_NULL, related_name='bed_transitions'
    )
    # Minutes spent in ``from_status`` before this change
    duration_minutes = models.PositiveIntegerField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=['bed', 'changed_at']),
            models.Index(fields=['facility', 'from_status', 'to_status', 'changed_at']),
        ]

    def __str__(self) -> str:
        return f"{self.bed_id}: {self.from_status or '-'} → {self.to_status}"


class CensusSnapshot(models.Model):
    """Immutable point-in-time roll-up of one unit.

    Only the variance fields are ever written after creation, once the
    forecast for the snapshot date is known.
    """
    facility = models.ForeignKey(Facility, on_delete=models.PROTECT, related_name='census_snapshots')
    unit = models.ForeignKey(Unit, on_delete=models.PROTECT, related_name='census_snapshots')
    as_of = models.DateTimeField()
    scheduled = models.BooleanField(default=False)
    total_beds = models.PositiveIntegerField(default=0)
    occupied = models.PositiveIntegerField(default=0)
    available = models.PositiveIntegerField(default=0)
    dirty = models.PositiveIntegerField(default=0)
    blocked = models.PositiveIntegerField(default=0)
    admissions = models.PositiveIntegerField(default=0)
    discharges = models.PositiveIntegerField(default=0)
    transfers_in = models.PositiveIntegerField(default=0)
    transfers_out = models.PositiveIntegerField(default=0)
    predicted_available = models.IntegerField(null=True, blank=True)
    variance = models.IntegerField(null=True, blank=True)
    forecast = models.ForeignKey(
        'Forecast', null=True, blank=True, on_delete=models.SET_NULL, related_name='validated_by'
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['unit', 'as_of'], name='uq_census_unit_as_of'),
        ]
        indexes = [
            models.Index(fields=['unit', 'as_of']),
        ]

    def counts(self) -> dict:
        return {
            'totalBeds': self.total_beds,
            'occupied': self.occupied,
            'available': self.available,
            'dirty': self.dirty,
            'blocked': self.blocked,
            'admissions': self.admissions,
            'discharges': self.discharges,
            'transfersIn': self.transfers_in,
            'transfersOut': self.transfers_out,
        }

    def __str__(self) -> str:
        return f"Census({self.unit_id}) occ={self.occupied} avail={self.available} @ {self.as_of:%F %T}"


class LOSBenchmark(models.Model):
    """Baseline length of stay keyed by (diagnosis class, unit).

    ``facility`` null means a global benchmark; ``unit`` null means the
    benchmark applies to every unit.  ``age_factors`` maps an age band
    (e.g. ``"65-79"``) to a multiplier, ``acuity_factors`` maps an
    acuity level to a multiplier and ``comorbidity_factor`` is added per
    comorbidity.
    """
    facility = models.ForeignKey(
        Facility, null=True, blank=True, on_delete=models.PROTECT, related_name='los_benchmarks'
    )
    diagnosis_class = models.CharField(max_length=64, db_index=True)
    unit = models.ForeignKey(
        Unit, null=True, blank=True, on_delete=models.PROTECT, related_name='los_benchmarks'
    )
    mean_los_days = models.FloatField()
    median_los_days = models.FloatField(null=True, blank=True)
    std_dev_days = models.FloatField(null=True, blank=True)
    age_factors = models.JSONField(default=dict, blank=True)
    acuity_factors = models.JSONField(default=dict, blank=True)
    comorbidity_factor = models.FloatField(default=0.0)
    source = models.CharField(max_length=32, blank=True)
    is_active = models.BooleanField(default=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return f"LOS {self.diagnosis_class}/{self.unit_id or '*'} = {self.mean_los_days}d"


class ScheduledArrival(models.Model):
    """Known future demand for a unit."""
    STATUS_SCHEDULED = 'scheduled'
    STATUS_CONFIRMED = 'confirmed'
    STATUS_ARRIVED = 'arrived'
    STATUS_CANCELLED = 'cancelled'
    STATUS_NO_SHOW = 'no_show'
    STATUS_CHOICES = (
        (STATUS_SCHEDULED, 'scheduled'),
        (STATUS_CONFIRMED, 'confirmed'),
        (STATUS_ARRIVED, 'arrived'),
        (STATUS_CANCELLED, 'cancelled'),
        (STATUS_NO_SHOW, 'no show'),
    )
    PENDING = (STATUS_SCHEDULED, STATUS_CONFIRMED)

    facility = models.ForeignKey(Facility, on_delete=models.PROTECT, related_name='scheduled_arrivals')
    unit = models.ForeignKey(Unit, on_delete=models.PROTECT, related_name='scheduled_arrivals')
    patient_ref = models.CharField(max_length=64, blank=True)
    expected_date = models.DateField(db_index=True)
    required_capabilities = models.JSONField(default=list, blank=True)
    arrival_type = models.CharField(max_length=32, blank=True, help_text="e.g. scheduled_surgery")
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_SCHEDULED, db_index=True)
    assignment = models.ForeignKey(
        Assignment, null=True, blank=True, on_delete=models.SET_NULL, related_name='fulfilled_arrivals'
    )
    external_reference = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['unit', 'expected_date', 'status']),
        ]

    def __str__(self) -> str:
        return f"Arrival {self.pk} -> {self.unit_id} on {self.expected_date} [{self.status}]"


class Forecast(models.Model):
    """Predicted available beds for one unit on one future date.

    Immutable once generated.  Regeneration marks the previous row
    superseded; rows are retained for accuracy backtesting.
    """
    facility = models.ForeignKey(Facility, on_delete=models.PROTECT, related_name='forecasts')
    unit = models.ForeignKey(Unit, on_delete=models.PROTECT, related_name='forecasts')
    forecast_date = models.DateField()
    days_ahead = models.PositiveSmallIntegerField()
    generated_at = models.DateTimeField(default=timezone.now)
    predicted_available = models.IntegerField()
    lower_bound = models.IntegerField()
    upper_bound = models.IntegerField()
    band_width = models.FloatField()
    confidence = models.FloatField()
    degraded = models.BooleanField(default=False)
    factors = models.JSONField(default=dict, blank=True)
    model_version = models.CharField(max_length=32)
    is_current = models.BooleanField(default=True)
    superseded_at = models.DateTimeField(null=True, blank=True)
    # Filled in once a census snapshot exists for the date
    actual_available = models.IntegerField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['unit', 'forecast_date'], condition=Q(is_current=True), name='uq_current_forecast'
            ),
        ]
        indexes = [
            models.Index(fields=['unit', 'forecast_date', 'generated_at']),
        ]

    def __str__(self) -> str:
        return f"Forecast({self.unit_id}) {self.forecast_date} avail={self.predicted_available}"


class OutboundEvent(models.Model):
    """Outbox row for a state change that external systems must hear about."""
    TYPE_BED_STATUS = 'bed.status_changed'
    TYPE_ASSIGNMENT_OPENED = 'assignment.opened'
    TYPE_ASSIGNMENT_CLOSED = 'assignment.closed'
    TYPE_CHOICES = (
        (TYPE_BED_STATUS, TYPE_BED_STATUS),
        (TYPE_ASSIGNMENT_OPENED, TYPE_ASSIGNMENT_OPENED),
        (TYPE_ASSIGNMENT_CLOSED, TYPE_ASSIGNMENT_CLOSED),
    )

    facility = models.ForeignKey(Facility, on_delete=models.PROTECT, related_name='outbound_events')
    event_type = models.CharField(max_length=32, choices=TYPE_CHOICES)
    # HL7 ADT trigger event equivalent: A01 admit, A02 transfer, A03 discharge, A20 bed status
    adt_code = models.CharField(max_length=8)
    payload = models.JSONField(default=dict)
    occurred_at = models.DateTimeField(default=timezone.now)
    delivered_at = models.DateTimeField(null=True, blank=True)
    attempts = models.PositiveIntegerField(default=0)

    class Meta:
        indexes = [
            models.Index(fields=['delivered_at', 'occurred_at']),
        ]

    def __str__(self) -> str:
        return f"{self.event_type} {self.adt_code} #{self.pk}"


class AdtMessage(models.Model):
    """Inbound ADT message already applied, keyed by its external id."""
    facility = models.ForeignKey(Facility, on_delete=models.PROTECT, related_name='adt_messages')
    message_id = models.CharField(max_length=64)
    event_type = models.CharField(max_length=16)
    received_at = models.DateTimeField(auto_now_add=True)
    outcome = models.JSONField(default=dict)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['facility', 'message_id'], name='uq_adt_message'),
        ]

    def __str__(self) -> str:
        return f"ADT {self.event_type} {self.message_id}"
