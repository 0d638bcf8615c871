"""
Facility scope resolution for HTTP callers.

The caller names its tenant and facility in the ``X-Tenant-Id`` and
``X-Facility-Id`` headers.  The scope is resolved once per request and
attached as ``request.facility_scope`` for the view to pass on.
"""
from rest_framework.permissions import BasePermission

from capacity.scope import resolve_scope

TENANT_HEADER = 'HTTP_X_TENANT_ID'
FACILITY_HEADER = 'HTTP_X_FACILITY_ID'


class HasFacilityScope(BasePermission):
    """Require a valid tenant/facility pair; raises ``ScopeViolation`` otherwise."""
    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        request.facility_scope = resolve_scope(
            request.META.get(TENANT_HEADER), request.META.get(FACILITY_HEADER)
        )
        return True
