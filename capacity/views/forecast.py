from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated

from capacity import api
from capacity.permissions import HasFacilityScope
from capacity.serializers.queries import ForecastQuerySerializer, WindowQuerySerializer
from capacity.services.los import LOSEstimate
from capacity.views.common import invalid, respond


@api_view(['GET'])
@permission_classes([IsAuthenticated, HasFacilityScope])
def unit_forecast(request, unit_id: int):
    """Stored forecasts for the next ``daysAhead`` days.  Cached; never regenerates."""
    s = ForecastQuerySerializer(data=request.query_params)
    if not s.is_valid():
        return invalid(s)
    return respond(api.get_forecast(request.facility_scope, unit_id, s.validated_data['daysAhead']))


@api_view(['GET'])
@permission_classes([IsAuthenticated, HasFacilityScope])
def unit_accuracy(request, unit_id: int):
    s = WindowQuerySerializer(data=request.query_params)
    if not s.is_valid():
        return invalid(s)
    return respond(api.get_prediction_accuracy(
        request.facility_scope, unit_id, days=s.validated_data.get('days', 30)
    ))


@api_view(['GET'])
@permission_classes([IsAuthenticated, HasFacilityScope])
def unit_discharges(request, unit_id: int):
    """Open stays of the unit ranked by discharge likelihood for today."""
    return respond(api.get_predicted_discharges(request.facility_scope, unit_id))


@api_view(['GET'])
@permission_classes([IsAuthenticated, HasFacilityScope])
def assignment_los(request, assignment_id: int):
    return respond(api.estimate_remaining_los(request.facility_scope, assignment_id), LOSEstimate.to_dict)
