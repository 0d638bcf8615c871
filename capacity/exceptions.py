"""
Error taxonomy of the bed control engine and the DRF exception handler.

Each engine error carries a stable ``kind`` so callers can branch on it
without parsing messages.  The HTTP layer maps kinds to status codes and
renders every failure in the same ``{'ok': False, 'error': ...}`` shape.
"""
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler


class CapacityError(Exception):
    """Base class for every failure the engine surfaces to callers."""
    kind = 'CapacityError'
    http_status = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str = '', **context):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.context = context


class InvalidTransition(CapacityError):
    """Requested bed status change is not in the allowed graph."""
    kind = 'InvalidTransition'
    http_status = status.HTTP_409_CONFLICT


class NoBedAvailable(CapacityError):
    """No candidate bed satisfies the request.  Escalation is the caller's call."""
    kind = 'NoBedAvailable'
    http_status = status.HTTP_409_CONFLICT


class PatientAlreadyAssigned(CapacityError):
    kind = 'PatientAlreadyAssigned'
    http_status = status.HTTP_409_CONFLICT


class StaleForecastInput(CapacityError):
    """Census or LOS inputs are missing or too old.

    Never fails a forecast; the forecaster downgrades confidence instead.
    """
    kind = 'StaleForecastInput'
    http_status = status.HTTP_200_OK


class AssignmentConflict(CapacityError):
    """A concurrent caller claimed the selected bed first."""
    kind = 'AssignmentConflict'
    http_status = status.HTTP_409_CONFLICT
    retryable = True


class NotFound(CapacityError):
    kind = 'NotFound'
    http_status = status.HTTP_404_NOT_FOUND


class ScopeViolation(CapacityError):
    kind = 'ScopeViolation'
    http_status = status.HTTP_403_FORBIDDEN


class PersistenceTimeout(CapacityError):
    """Transient persistence failures outlived the caller's timeout."""
    kind = 'PersistenceTimeout'
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class AdtConflict(CapacityError):
    """Inbound ADT event contradicts the engine's last known state."""
    kind = 'AdtConflict'
    http_status = status.HTTP_409_CONFLICT


class InvalidRequest(CapacityError):
    """Arguments are malformed or violate a unit or bed configuration rule."""
    kind = 'InvalidRequest'
    http_status = status.HTTP_400_BAD_REQUEST


def api_exception_handler(exc, context):
    if isinstance(exc, CapacityError):
        return Response(
            {'ok': False, 'error': {'code': exc.kind, 'message': exc.message}},
            status=exc.http_status,
        )
    resp = drf_exception_handler(exc, context)
    if resp is None:
        return Response({'ok': False, 'error': {'code': 'server_error', 'message': str(exc)}}, status=500)
    # normalize response
    detail = None
    if isinstance(resp.data, dict):
        detail = resp.data.get('detail') or resp.data
    else:
        detail = str(resp.data)
    return Response({'ok': False, 'error': {'code': 'api_error', 'message': detail}}, status=resp.status_code)
