"""
Permission classes for hospital-scoped access.
"""
from rest_framework.permissions import BasePermission


class HasHospital(BasePermission):
    """Authenticated staff bound to a hospital; every exchange call acts for it."""
    message = 'account is not bound to a hospital'

    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        user = getattr(request, "user", None)
        return bool(user and user.is_authenticated and getattr(user, "hospital_id", None))
