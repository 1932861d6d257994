from enum import Enum
from typing import Set

from .models import User, UserRole


class Permissions(str, Enum):
    # Orders
    ORDERS_READ_OWN = "orders:read_own"
    ORDERS_READ_ALL = "orders:read_all"
    ORDERS_CREATE = "orders:create"
    ORDERS_CANCEL_OWN = "orders:cancel_own"
    ORDERS_UPDATE = "orders:update"  # Any fulfillment transition on any order
    ORDERS_PAY = "orders:pay"  # Operator payment confirmation (cash)

    # Catalog
    CATALOG_MANAGE = "catalog:manage"

    # Shop settings (tax, delivery)
    SETTINGS_MANAGE = "settings:manage"


ROLE_PERMISSIONS: dict[UserRole, Set[str]] = {
    UserRole.USER: {
        Permissions.ORDERS_READ_OWN.value,
        Permissions.ORDERS_CREATE.value,
        Permissions.ORDERS_CANCEL_OWN.value,
    },
    UserRole.ADMIN: {p.value for p in Permissions},
}


class PermissionService:
    @staticmethod
    def get_role_permissions(role: UserRole) -> Set[str]:
        return set(ROLE_PERMISSIONS.get(role, set()))

    @staticmethod
    def get_user_permissions(user: User) -> Set[str]:
        """Get all permissions for a user based on their role."""
        return PermissionService.get_role_permissions(user.role)

    @staticmethod
    def has_permission(role: UserRole, required_permission: Permissions) -> bool:
        return required_permission.value in PermissionService.get_role_permissions(role)
