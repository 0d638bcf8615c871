from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated

from capacity import api
from capacity.permissions import HasFacilityScope
from capacity.serializers.queries import CensusQuerySerializer, WindowQuerySerializer
from capacity.views.common import invalid, respond


@api_view(['GET'])
@permission_classes([IsAuthenticated, HasFacilityScope])
def unit_census(request, unit_id: int):
    """Current census of a unit, or its state at ``?at=`` (ISO timestamp)."""
    s = CensusQuerySerializer(data=request.query_params)
    if not s.is_valid():
        return invalid(s)
    return respond(api.get_unit_census(request.facility_scope, unit_id, s.validated_data.get('at')))


@api_view(['GET'])
@permission_classes([IsAuthenticated, HasFacilityScope])
def unit_turnaround(request, unit_id: int):
    s = WindowQuerySerializer(data=request.query_params)
    if not s.is_valid():
        return invalid(s)
    return respond(api.get_turnaround(request.facility_scope, unit_id, days=s.validated_data.get('days', 7)))
