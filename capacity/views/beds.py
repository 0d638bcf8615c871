from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated

from capacity import api
from capacity.permissions import HasFacilityScope
from capacity.serializers.queries import BedStatusSerializer, MatchedBedsQuerySerializer
from capacity.services.registry import format_bed
from capacity.views.common import invalid, respond


@api_view(['GET'])
@permission_classes([IsAuthenticated, HasFacilityScope])
def matched_beds(request, unit_id: int):
    """Available beds of the unit matching ``?capabilities=a,b&acuity=n``, longest idle first."""
    s = MatchedBedsQuerySerializer(data=request.query_params)
    if not s.is_valid():
        return invalid(s)
    result = api.get_acuity_matched_beds(
        request.facility_scope, unit_id, s.validated_data.get('capabilities') or (),
        s.validated_data.get('acuity'),
    )
    return respond(result, format_bed)


@api_view(['GET'])
@permission_classes([IsAuthenticated, HasFacilityScope])
def unit_board(request, unit_id: int):
    return respond(api.get_bed_board(request.facility_scope, unit_id))


@api_view(['POST'])
@permission_classes([IsAuthenticated, HasFacilityScope])
def bed_status(request, bed_id: int):
    """Operational status change (cleaned, blocked, maintenance)."""
    s = BedStatusSerializer(data=request.data)
    if not s.is_valid():
        return invalid(s)
    result = api.set_bed_status(
        request.facility_scope, bed_id, s.validated_data['status'], reason=s.validated_data.get('reason', ''),
    )
    return respond(result, format_bed)
