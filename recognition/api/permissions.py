"""Role-based DRF permissions."""

from rest_framework import permissions


class IsAdmin(permissions.BasePermission):
    message = "Administrator access is required."

    def has_permission(self, request, view) -> bool:
        user = request.user
        return bool(user and user.is_authenticated and getattr(user, "is_admin", False))


class IsSuperAdmin(permissions.BasePermission):
    message = "Super administrator access is required."

    def has_permission(self, request, view) -> bool:
        user = request.user
        return bool(user and user.is_authenticated and getattr(user, "is_super_admin", False))
