"""Inbound ADT payloads.

Field names follow the camelCase wire format; ``to_event`` hands the
adapter a snake_case dict.
"""
from rest_framework import serializers

from capacity.models import Assignment


class CapabilityListField(serializers.ListField):
    child = serializers.CharField(max_length=32)

    def to_internal_value(self, data):
        # Accept "a,b" as well as repeated query parameters
        if isinstance(data, str):
            data = [data]
        if isinstance(data, (list, tuple)):
            data = [p.strip() for item in data for p in str(item).split(',') if p.strip()]
        return super().to_internal_value(data)


class AdtEventSerializer(serializers.Serializer):
    messageId = serializers.CharField(max_length=64, required=False, allow_blank=True)
    patientRef = serializers.CharField(max_length=64)
    occurredAt = serializers.DateTimeField(required=False)

    FIELD_MAP = {
        'messageId': 'message_id',
        'patientRef': 'patient_ref',
        'occurredAt': 'occurred_at',
    }

    def to_event(self) -> dict:
        return {self.FIELD_MAP.get(k, k): v for k, v in self.validated_data.items()}


class AdmitSerializer(AdtEventSerializer):
    unitId = serializers.IntegerField(min_value=1)
    requiredCapabilities = CapabilityListField(required=False)
    acuity = serializers.IntegerField(min_value=1, max_value=10, required=False)
    diagnosisClass = serializers.CharField(max_length=64, required=False, allow_blank=True)
    age = serializers.IntegerField(min_value=0, max_value=130, required=False)
    comorbidityCount = serializers.IntegerField(min_value=0, required=False)
    scheduledArrivalId = serializers.IntegerField(min_value=1, required=False)

    FIELD_MAP = {
        **AdtEventSerializer.FIELD_MAP,
        'unitId': 'unit_id',
        'requiredCapabilities': 'required_capabilities',
        'diagnosisClass': 'diagnosis_class',
        'comorbidityCount': 'comorbidity_count',
        'scheduledArrivalId': 'scheduled_arrival_id',
    }


class TransferSerializer(AdtEventSerializer):
    fromUnitId = serializers.IntegerField(min_value=1, required=False)
    toUnitId = serializers.IntegerField(min_value=1)
    requiredCapabilities = CapabilityListField(required=False)
    acuity = serializers.IntegerField(min_value=1, max_value=10, required=False)

    FIELD_MAP = {
        **AdtEventSerializer.FIELD_MAP,
        'fromUnitId': 'from_unit_id',
        'toUnitId': 'to_unit_id',
        'requiredCapabilities': 'required_capabilities',
    }


class DischargeSerializer(AdtEventSerializer):
    disposition = serializers.ChoiceField(
        choices=[d for d, _ in Assignment.DISPOSITION_CHOICES if d != Assignment.DISPOSITION_TRANSFER],
        required=False,
    )
    rebookAuthorized = serializers.BooleanField(required=False, default=False)

    FIELD_MAP = {
        **AdtEventSerializer.FIELD_MAP,
        'rebookAuthorized': 'rebook_authorized',
    }
