"""Inbound ADT endpoints.  Each accepts one event and answers with the resulting assignment."""
from rest_framework.decorators import api_view, permission_classes, throttle_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.throttling import UserRateThrottle

from capacity import adt
from capacity.permissions import HasFacilityScope
from capacity.serializers.adt import AdmitSerializer, DischargeSerializer, TransferSerializer
from capacity.views.common import invalid, respond


class AdtThrottle(UserRateThrottle):
    scope = 'adt'


def _apply(request, serializer_class, event_type: str):
    s = serializer_class(data=request.data)
    if not s.is_valid():
        return invalid(s)
    result = adt.dispatch(request.facility_scope, event_type, s.to_event())
    return respond(result, status=201 if result.ok and not result.warnings else 200)


@api_view(['POST'])
@permission_classes([IsAuthenticated, HasFacilityScope])
@throttle_classes([AdtThrottle])
def adt_admit(request):
    return _apply(request, AdmitSerializer, adt.ADMIT)


@api_view(['POST'])
@permission_classes([IsAuthenticated, HasFacilityScope])
@throttle_classes([AdtThrottle])
def adt_transfer(request):
    return _apply(request, TransferSerializer, adt.TRANSFER)


@api_view(['POST'])
@permission_classes([IsAuthenticated, HasFacilityScope])
@throttle_classes([AdtThrottle])
def adt_discharge(request):
    return _apply(request, DischargeSerializer, adt.DISCHARGE)
