"""
Permission Constants and Role Mappings

WHY: Centralized permission definitions keep routes, services and tests in
agreement about who may do what. Roles are fixed (admin, staff, customer);
each role maps to a static set of permission codes.

DESIGN PRINCIPLES:
- Permissions are granular (one action per permission)
- Deny by default: a code missing from a role's list is denied
- Cancellation and ledger adjustments are admin-only
- Customer users act only on their own customer record (enforced in services)
"""

from __future__ import annotations


class PermissionDeniedError(Exception):
    """Raised when the acting user lacks a permission or crosses a customer boundary."""

    def __init__(self, message: str, required_permission: str | None = None):
        super().__init__(message)
        self.message = message
        self.required_permission = required_permission


# =============================================================================
# PERMISSION DEFINITIONS
# =============================================================================

# Each permission is defined as: (code, description)
PERMISSION_DEFINITIONS = [
    ("CREATE_ORDER", "Place new orders"),
    ("VIEW_ORDERS", "List and view orders"),
    ("EDIT_ORDER_PRICES", "Change line rates on existing orders"),
    ("UPDATE_ORDER_STATUS", "Move orders through the fulfilment lifecycle"),
    ("CANCEL_ORDER", "Cancel orders"),
    ("RECORD_PAYMENT", "Record order payments and customer payments"),
    ("RECORD_INVOICE", "Post delivered orders to the customer ledger"),
    ("RECORD_ADJUSTMENT", "Post manual ledger adjustments"),
    ("VIEW_LEDGER", "View customer ledgers, statements and balances"),
    ("MANAGE_MARKET_RATES", "Publish and view market rates"),
    ("SYSTEM_ADMIN", "Operational tooling (locks, counters)"),
]

ALL_PERMISSIONS = [code for code, _ in PERMISSION_DEFINITIONS]


# =============================================================================
# DEFAULT ROLE PERMISSIONS
# =============================================================================

DEFAULT_ROLE_PERMISSIONS = {
    "admin": list(ALL_PERMISSIONS),

    "staff": [
        "CREATE_ORDER",
        "VIEW_ORDERS",
        "EDIT_ORDER_PRICES",
        "UPDATE_ORDER_STATUS",
        "RECORD_PAYMENT",
        "RECORD_INVOICE",
        "VIEW_LEDGER",
        "MANAGE_MARKET_RATES",
    ],

    "customer": [
        # Own orders only; see order_service.ensure_customer_scope
        "CREATE_ORDER",
        "VIEW_ORDERS",
    ],
}


def get_role_permissions(role: str | None) -> set[str]:
    return set(DEFAULT_ROLE_PERMISSIONS.get(role or "", []))


def has_permission(user, permission_code: str) -> bool:
    if user is None or not getattr(user, "is_active", False):
        return False
    return permission_code in get_role_permissions(user.role)


def require_permission(user, permission_code: str) -> None:
    """Raise PermissionDeniedError unless `user` holds `permission_code`."""
    if not has_permission(user, permission_code):
        raise PermissionDeniedError(
            f"User lacks permission: {permission_code}",
            required_permission=permission_code,
        )
