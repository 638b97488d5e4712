# FILE: /backend/apps/accounts/permissions.py
from rest_framework import permissions
from .models import User


VERIFIER_ROLES = [User.Role.OWNER, User.Role.STAFF, User.Role.ADMIN]


class IsStudent(permissions.BasePermission):
    """
    Permission check for students.
    """

    def has_permission(self, request, view):
        user = request.user
        if not (user and getattr(user, 'is_authenticated', False)):
            return False
        return getattr(user, 'role', None) == User.Role.STUDENT


class IsOwnerOrStaff(permissions.BasePermission):
    """
    Library owners and front-desk staff (admins included).
    """

    def has_permission(self, request, view):
        user = request.user
        if not (user and getattr(user, 'is_authenticated', False)):
            return False
        return getattr(user, 'role', None) in VERIFIER_ROLES

