from rest_framework import permissions


def get_owned_pharmacy(user):
    """The pharmacy registered by this user, or None for customers and anonymous users."""
    if user is None or not user.is_authenticated:
        return None
    return getattr(user, 'pharmacy', None)


class IsPharmacyUser(permissions.BasePermission):
    message = 'Only pharmacy accounts can perform this action.'

    def has_permission(self, request, view):
        return get_owned_pharmacy(request.user) is not None


class IsPharmacyOwnerOrStaff(permissions.BasePermission):
    """
    Object-level check for a Pharmacy or anything hanging off one
    (inventory listings, orders, deliveries).
    """
    message = 'Unauthorized access.'

    def has_object_permission(self, request, view, obj):
        if request.user.is_staff:
            return True
        pharmacy = getattr(obj, 'pharmacy', obj)
        return pharmacy.is_owned_by(request.user)


class CatalogueWritePermission(permissions.BasePermission):
    """Anyone can read the catalogue; staff and pharmacies can edit it."""

    def has_permission(self, request, view):
        if request.method in permissions.SAFE_METHODS:
            return True
        user = request.user
        return bool(user and user.is_authenticated and (user.is_staff or get_owned_pharmacy(user)))
