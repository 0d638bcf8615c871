from rest_framework.response import Response

from capacity.exceptions import CapacityError
from capacity.results import Result

HTTP_STATUS = {cls.kind: cls.http_status for cls in CapacityError.__subclasses__()}


def respond(result: Result, formatter=None, status: int = 200) -> Response:
    """Render a facade result in the ``{'ok': ..., 'data'|'error': ...}`` envelope."""
    if not result.ok:
        return Response(result.to_payload(), status=HTTP_STATUS.get(result.kind, 400))
    data = result.value
    if formatter is not None:
        data = [formatter(v) for v in data] if isinstance(data, list) else formatter(data)
    return Response(result.to_payload(data), status=status)


def invalid(serializer) -> Response:
    return Response(
        {'ok': False, 'error': {'code': 'InvalidRequest', 'message': serializer.errors}}, status=400
    )
