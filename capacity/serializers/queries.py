import bleach
from rest_framework import serializers

from capacity.models import Bed
from capacity.serializers.adt import CapabilityListField
from capacity.services.forecast import MAX_DAYS_AHEAD


class CensusQuerySerializer(serializers.Serializer):
    at = serializers.DateTimeField(required=False)


class ForecastQuerySerializer(serializers.Serializer):
    daysAhead = serializers.IntegerField(min_value=1, max_value=MAX_DAYS_AHEAD, required=False, default=7)


class MatchedBedsQuerySerializer(serializers.Serializer):
    capabilities = CapabilityListField(required=False)
    acuity = serializers.IntegerField(min_value=1, max_value=10, required=False)


class WindowQuerySerializer(serializers.Serializer):
    days = serializers.IntegerField(min_value=1, max_value=365, required=False)


class BedStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(
        choices=[s for s, _ in Bed.STATUS_CHOICES if s != Bed.STATUS_OCCUPIED]
    )
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True)

    def validate_reason(self, value: str) -> str:
        return bleach.clean(value, tags=[], strip=True)
