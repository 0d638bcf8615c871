"""
Facility scoping.

Every engine call takes a :class:`FacilityScope` as its first argument.
The scope is validated once, when it is resolved at the service
boundary, and afterwards only its ``facility_id`` is used to filter
queries.  Rows of another facility are indistinguishable from rows that
do not exist.
"""
from __future__ import annotations

from dataclasses import dataclass

from .exceptions import NotFound, ScopeViolation
from .models import Facility


@dataclass(frozen=True)
class FacilityScope:
    tenant_id: str
    facility_id: str

    def filter(self, queryset):
        return queryset.filter(facility_id=self.facility_id)

    def get(self, model, **lookup):
        """Fetch one row of ``model`` inside this facility or raise ``NotFound``."""
        obj = model.objects.filter(facility_id=self.facility_id, **lookup).first()
        if obj is None:
            raise NotFound(f"{model.__name__} not found", **lookup)
        return obj


def resolve_scope(tenant_id, facility_id) -> FacilityScope:
    if not tenant_id or not facility_id:
        raise ScopeViolation('tenant and facility are required')
    facility = Facility.objects.filter(id=str(facility_id)).first()
    if facility is None or facility.tenant_id != str(tenant_id):
        raise ScopeViolation('facility is not part of this tenant')
    if not facility.is_active:
        raise ScopeViolation('facility is inactive')
    return FacilityScope(tenant_id=str(tenant_id), facility_id=facility.id)


def scope_for(facility: Facility) -> FacilityScope:
    """Scope of an already loaded facility, for schedulers iterating facilities."""
    return FacilityScope(tenant_id=facility.tenant_id, facility_id=facility.id)
