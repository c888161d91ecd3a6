"""
ATLAS Access Policy

This module is the SINGLE source of truth for what each role may do.
Every function is pure: no I/O, no caching, no logging. Callers re-evaluate
on every request because role and resource ownership can change between
requests.

Key Features:
- Static permission -> roles table (fixed at build time)
- Relationship-scoped digital twin access
- Asset download gating (previews are never downloadable)
- Route guard table with exact and parameterized matches

POLICY NOTE: routes with no entry in the route tables are ALLOWED for any
recognised role. This fail-open default is kept deliberately and pinned by
tests; adding a dashboard route without a table entry exposes it to everyone.
"""

import re
from typing import Optional, Dict, List, FrozenSet, Pattern, Tuple, Any, Union

from .models import (
    Role,
    ForgeState,
    Permission,
    AssetType,
    LicenseStatus,
)

RoleLike = Union[Role, str, None]
PermissionLike = Union[Permission, str]


# -----------------------------------------------------------------------------
# Permission -> Allowed Roles Mapping
# -----------------------------------------------------------------------------
# SECURITY-CRITICAL: changes to this mapping MUST be reviewed carefully.
# The viewer role holds no permission at all.

_ADMIN = frozenset({Role.ADMIN})
_ADMIN_MODEL = frozenset({Role.ADMIN, Role.MODEL})
_ADMIN_BRAND = frozenset({Role.ADMIN, Role.BRAND})
_ADMIN_MODEL_BRAND = frozenset({Role.ADMIN, Role.MODEL, Role.BRAND})
_MODEL = frozenset({Role.MODEL})

PERMISSIONS: Dict[Permission, FrozenSet[Role]] = {
    # Models
    Permission.MODELS_READ: _ADMIN_MODEL_BRAND,
    Permission.MODELS_CREATE: _ADMIN,
    Permission.MODELS_UPDATE: _ADMIN,
    Permission.MODELS_DELETE: _ADMIN,
    Permission.MODELS_ARCHIVE: _ADMIN,

    # Forges
    Permission.FORGES_READ: _ADMIN_MODEL_BRAND,
    Permission.FORGES_CREATE: _ADMIN,
    Permission.FORGES_TRANSITION: _ADMIN,
    Permission.FORGES_ROLLBACK: _ADMIN,
    Permission.FORGES_DELETE: _ADMIN,

    # Captures
    Permission.CAPTURES_READ: _ADMIN,
    Permission.CAPTURES_UPLOAD: _ADMIN,
    Permission.CAPTURE_VIEWER_READ: _ADMIN_MODEL,

    # Validation and certification
    Permission.VALIDATION_EXECUTE: _ADMIN,
    Permission.CERTIFICATION_EXECUTE: _ADMIN,
    Permission.CERTIFICATION_REVOKE: _ADMIN,

    # Visual twin preview / generator
    Permission.VTP_GENERATE: _ADMIN,
    Permission.VTP_READ: _ADMIN_MODEL,
    Permission.VTG_GENERATE: _ADMIN,
    Permission.VTG_READ: _ADMIN,

    # Assets
    Permission.ASSETS_READ: _ADMIN_MODEL_BRAND,
    Permission.ASSETS_DOWNLOAD: _ADMIN_BRAND,

    # Licenses
    Permission.LICENSES_READ: _ADMIN_MODEL_BRAND,
    Permission.LICENSES_CREATE: _ADMIN,
    Permission.LICENSES_REVOKE: _ADMIN,

    # Career (model self-service)
    Permission.CAREER_READ: _MODEL,
    Permission.CAREER_CONSENTS: _MODEL,

    # Audit
    Permission.AUDIT_READ: _ADMIN,
    Permission.AUDIT_EXPORT: _ADMIN,

    # System
    Permission.SYSTEM_READ: _ADMIN,
    Permission.SYSTEM_CONFIGURE: _ADMIN,
}


# -----------------------------------------------------------------------------
# Route -> Required Permissions Mapping
# -----------------------------------------------------------------------------
# Holding ANY one of the listed permissions grants access.

ROUTE_PERMISSIONS: Dict[str, Tuple[Permission, ...]] = {
    "/dashboard": (Permission.MODELS_READ,),
    "/dashboard/models": (Permission.MODELS_READ,),
    "/dashboard/forges": (Permission.FORGES_READ,),
    "/dashboard/capture": (Permission.CAPTURES_UPLOAD,),
    "/dashboard/validation": (Permission.VALIDATION_EXECUTE,),
    "/dashboard/certification": (Permission.CERTIFICATION_EXECUTE,),
    "/dashboard/registry": (Permission.FORGES_READ,),
    "/dashboard/capture-viewer": (Permission.CAPTURE_VIEWER_READ,),
    "/dashboard/visual-preview": (Permission.VTP_READ,),
    "/dashboard/visual-generator": (Permission.VTG_READ,),
    "/dashboard/assets": (Permission.ASSETS_READ,),
    "/dashboard/licenses": (Permission.LICENSES_READ,),
    "/dashboard/career": (Permission.CAREER_READ,),
    "/dashboard/audit": (Permission.AUDIT_READ,),
    "/dashboard/system": (Permission.SYSTEM_READ,),
}

# Parameterized routes, checked in order after the exact table misses.
DYNAMIC_ROUTE_PERMISSIONS: Tuple[Tuple[Pattern[str], Tuple[Permission, ...]], ...] = (
    (re.compile(r"^/dashboard/forges/[^/]+$"), (Permission.FORGES_READ,)),
    (re.compile(r"^/dashboard/models/[^/]+$"), (Permission.MODELS_READ,)),
)


# -----------------------------------------------------------------------------
# Core Checks
# -----------------------------------------------------------------------------
def has_permission(role: RoleLike, permission: PermissionLike) -> bool:
    """Table lookup. Unknown role or unknown permission -> False."""
    parsed_role = Role.parse(role)
    parsed_permission = Permission.parse(permission)
    if parsed_role is None or parsed_permission is None:
        return False
    return parsed_role in PERMISSIONS.get(parsed_permission, frozenset())


def permissions_for_role(role: RoleLike) -> List[str]:
    """All permission names held by a role, sorted."""
    parsed = Role.parse(role)
    if parsed is None:
        return []
    return sorted(p.value for p, roles in PERMISSIONS.items() if parsed in roles)


def required_transition_permission(to_state: ForgeState) -> Permission:
    """
    Certification is a distinct, stricter capability than an ordinary
    transition; every other target needs forges:transition.
    """
    if to_state == ForgeState.CERTIFIED:
        return Permission.CERTIFICATION_EXECUTE
    return Permission.FORGES_TRANSITION


def can_access_digital_twin(
    role: RoleLike,
    actor_linked_model_id: Optional[str],
    actor_linked_brand_id: Optional[str],
    target_twin_owner_model_id: Optional[str],
    brand_id_with_license: Optional[str] = None,
) -> bool:
    """
    Relationship-scoped twin access.

    - admin: always
    - model: only its own twin
    - brand: only twins licensed to that brand
    A missing id on either side never matches.
    """
    parsed = Role.parse(role)
    if parsed == Role.ADMIN:
        return True
    if parsed == Role.MODEL:
        return _same_id(actor_linked_model_id, target_twin_owner_model_id)
    if parsed == Role.BRAND:
        return _same_id(actor_linked_brand_id, brand_id_with_license)
    return False


def can_transition_to_state(role: RoleLike, from_state: Any, to_state: Any) -> bool:
    """
    Permission side of a forge transition: admin only, never out of
    CERTIFIED, and CERTIFIED targets need certification:execute.

    Step validity (exactly one forward step) is the lifecycle guard's job.
    """
    parsed = Role.parse(role)
    source = ForgeState.parse(from_state)
    target = ForgeState.parse(to_state)
    if parsed != Role.ADMIN or source is None or target is None:
        return False
    if source == ForgeState.CERTIFIED:
        return False
    return has_permission(parsed, required_transition_permission(target))


def can_rollback(role: RoleLike, current_state: Any) -> bool:
    """
    Whether a rollback would be permitted. Nothing precedes CREATED and
    CERTIFIED is immutable. No rollback execution exists.
    """
    state = ForgeState.parse(current_state)
    if state is None or state in (ForgeState.CREATED, ForgeState.CERTIFIED):
        return False
    return has_permission(role, Permission.FORGES_ROLLBACK)


def can_download_asset(
    role: RoleLike,
    asset_type: Any,
    license_status: Any = None,
) -> bool:
    """
    Download gating.

    PREVIEW assets are view-only for every role. Admin may download any
    LICENSED asset; a brand only while its license is active.
    """
    parsed = Role.parse(role)
    if parsed is None:
        return False

    try:
        kind = AssetType(asset_type)
    except ValueError:
        return False
    if kind == AssetType.PREVIEW:
        return False

    if parsed == Role.ADMIN:
        return True

    if parsed == Role.BRAND:
        try:
            status = LicenseStatus(license_status) if license_status is not None else None
        except ValueError:
            return False
        return status == LicenseStatus.ACTIVE

    return False


def can_use_guided_capture(role: RoleLike) -> bool:
    # Capture is administrator-operated, even though model-facing screens
    # link to it.
    return Role.parse(role) == Role.ADMIN


def can_use_manual_upload(role: RoleLike) -> bool:
    return Role.parse(role) == Role.ADMIN


def can_access_route(role: RoleLike, route_path: str) -> bool:
    """
    Route guard.

    Admin bypasses every check. Otherwise exact-match table first, then the
    parameterized patterns. A route with no entry is ALLOWED (fail-open).
    """
    parsed = Role.parse(role)
    if parsed is None:
        return False
    if parsed == Role.ADMIN:
        return True

    required = ROUTE_PERMISSIONS.get(route_path)
    if required is not None:
        return any(has_permission(parsed, p) for p in required)

    for pattern, permissions in DYNAMIC_ROUTE_PERMISSIONS:
        if pattern.match(route_path):
            return any(has_permission(parsed, p) for p in permissions)

    return True


def _same_id(left: Optional[str], right: Optional[str]) -> bool:
    return bool(left) and bool(right) and left == right
