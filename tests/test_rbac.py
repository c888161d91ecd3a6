"""
Unit Tests for the Access Policy

Security-critical tests that prove:
1. The viewer role holds no permission
2. Only admins transition, certify, delete or roll back forges
3. Digital twin access is relationship-scoped
4. Preview assets are never downloadable
5. The route guard allows unmapped routes (fail-open default)
"""

import pytest

from atlas.models import AssetType, ForgeState, LicenseStatus, Permission, Role
from atlas.rbac import (
    PERMISSIONS,
    ROUTE_PERMISSIONS,
    can_access_digital_twin,
    can_access_route,
    can_download_asset,
    can_rollback,
    can_transition_to_state,
    can_use_guided_capture,
    can_use_manual_upload,
    has_permission,
    permissions_for_role,
    required_transition_permission,
)

ALL_ROLES = list(Role)


# -----------------------------------------------------------------------------
# Test: Permission Table
# -----------------------------------------------------------------------------
class TestPermissionTable:
    """The static permission -> roles table."""

    def test_every_permission_mapped(self):
        assert set(PERMISSIONS) == set(Permission)

    def test_viewer_holds_nothing(self):
        for permission in Permission:
            assert has_permission(Role.VIEWER, permission) is False
        assert permissions_for_role(Role.VIEWER) == []

    def test_admin_holds_everything_but_career(self):
        held = set(permissions_for_role(Role.ADMIN))
        assert held == {p.value for p in Permission} - {"career:read", "career:consents"}

    def test_model_permissions(self):
        assert permissions_for_role("model") == sorted([
            "models:read", "forges:read", "capture_viewer:read", "vtp:read",
            "assets:read", "licenses:read", "career:read", "career:consents",
        ])

    def test_brand_permissions(self):
        assert permissions_for_role("brand") == sorted([
            "models:read", "forges:read", "assets:read", "assets:download", "licenses:read",
        ])

    def test_certification_is_admin_only(self):
        for role in ALL_ROLES:
            expected = role == Role.ADMIN
            assert has_permission(role, Permission.CERTIFICATION_EXECUTE) is expected
            assert has_permission(role, Permission.FORGES_TRANSITION) is expected

    def test_string_inputs(self):
        assert has_permission("admin", "forges:transition") is True
        assert has_permission("brand", "assets:download") is True

    def test_unknown_role_or_permission(self):
        assert has_permission("superuser", "forges:read") is False
        assert has_permission(None, "forges:read") is False
        assert has_permission("admin", "forges:teleport") is False
        assert permissions_for_role("nobody") == []


# -----------------------------------------------------------------------------
# Test: Transition Permissions
# -----------------------------------------------------------------------------
class TestTransitionPermission:

    def test_required_permission(self):
        assert required_transition_permission(ForgeState.CERTIFIED) == Permission.CERTIFICATION_EXECUTE
        assert required_transition_permission(ForgeState.SEEDED) == Permission.FORGES_TRANSITION

    def test_admin_may_transition(self):
        assert can_transition_to_state(Role.ADMIN, "VALIDATED", "CERTIFIED") is True
        assert can_transition_to_state(Role.ADMIN, ForgeState.CREATED, ForgeState.CAPTURED) is True

    def test_never_out_of_certified(self):
        assert can_transition_to_state(Role.ADMIN, ForgeState.CERTIFIED, ForgeState.CERTIFIED) is False

    @pytest.mark.parametrize("role", [Role.MODEL, Role.BRAND, Role.VIEWER])
    def test_non_admin_never(self, role):
        assert can_transition_to_state(role, ForgeState.CREATED, ForgeState.CAPTURED) is False
        assert can_transition_to_state(role, ForgeState.VALIDATED, ForgeState.CERTIFIED) is False

    def test_unknown_states(self):
        assert can_transition_to_state(Role.ADMIN, "DRAFT", "CAPTURED") is False

    def test_rollback(self):
        assert can_rollback(Role.ADMIN, "PARAMETRIZED") is True
        assert can_rollback(Role.ADMIN, "CREATED") is False
        assert can_rollback(Role.ADMIN, "CERTIFIED") is False
        assert can_rollback(Role.BRAND, "PARAMETRIZED") is False


# -----------------------------------------------------------------------------
# Test: Digital Twin Access
# -----------------------------------------------------------------------------
class TestDigitalTwinAccess:

    def test_admin_always(self):
        assert can_access_digital_twin(Role.ADMIN, None, None, "m1") is True

    def test_model_own_twin(self):
        assert can_access_digital_twin("model", "m1", None, "m1", None) is True

    def test_model_other_twin(self):
        assert can_access_digital_twin("model", "m1", None, "m2", None) is False

    def test_model_without_link_never_matches(self):
        assert can_access_digital_twin("model", None, None, None) is False

    def test_brand_with_license(self):
        assert can_access_digital_twin("brand", None, "b1", "m1", "b1") is True

    def test_brand_without_license(self):
        assert can_access_digital_twin("brand", None, "b1", "m1", None) is False
        assert can_access_digital_twin("brand", None, "b1", "m1", "b2") is False

    def test_brand_without_link_never_matches(self):
        assert can_access_digital_twin("brand", None, None, "m1", None) is False

    def test_viewer_never(self):
        assert can_access_digital_twin(Role.VIEWER, "m1", "b1", "m1", "b1") is False


# -----------------------------------------------------------------------------
# Test: Asset Downloads
# -----------------------------------------------------------------------------
class TestAssetDownload:

    @pytest.mark.parametrize("role", ALL_ROLES)
    @pytest.mark.parametrize("status", [None] + list(LicenseStatus))
    def test_preview_never_downloadable(self, role, status):
        assert can_download_asset(role, AssetType.PREVIEW, status) is False

    def test_brand_needs_active_license(self):
        assert can_download_asset("brand", "LICENSED", "active") is True
        assert can_download_asset("brand", "LICENSED", "expired") is False
        assert can_download_asset("brand", "LICENSED", "revoked") is False
        assert can_download_asset("brand", "LICENSED", None) is False

    def test_admin_any_licensed(self):
        assert can_download_asset("admin", "LICENSED") is True
        assert can_download_asset("admin", "LICENSED", "revoked") is True

    def test_model_and_viewer_never(self):
        assert can_download_asset("model", "LICENSED", "active") is False
        assert can_download_asset("viewer", "LICENSED", "active") is False

    def test_unknown_inputs(self):
        assert can_download_asset("brand", "RAW", "active") is False
        assert can_download_asset("brand", "LICENSED", "pending") is False
        assert can_download_asset(None, "LICENSED", "active") is False


# -----------------------------------------------------------------------------
# Test: Capture Tools
# -----------------------------------------------------------------------------
class TestCaptureTools:

    def test_admin_only(self):
        for role in ALL_ROLES:
            assert can_use_guided_capture(role) is (role == Role.ADMIN)
            assert can_use_manual_upload(role) is (role == Role.ADMIN)


# -----------------------------------------------------------------------------
# Test: Route Guard
# -----------------------------------------------------------------------------
class TestRouteGuard:

    def test_admin_bypasses_table(self):
        for route in ROUTE_PERMISSIONS:
            assert can_access_route(Role.ADMIN, route) is True

    def test_exact_routes(self):
        assert can_access_route("model", "/dashboard/career") is True
        assert can_access_route("brand", "/dashboard/career") is False
        assert can_access_route("brand", "/dashboard/licenses") is True
        assert can_access_route("brand", "/dashboard/audit") is False
        assert can_access_route("model", "/dashboard/capture") is False

    def test_dynamic_routes(self):
        assert can_access_route("brand", "/dashboard/forges/abc-123") is True
        assert can_access_route("viewer", "/dashboard/forges/abc-123") is False
        assert can_access_route("model", "/dashboard/models/m1") is True

    def test_viewer_mapped_routes_denied(self):
        for route in ROUTE_PERMISSIONS:
            assert can_access_route(Role.VIEWER, route) is False

    def test_unmapped_route_is_allowed_fail_open(self):
        """
        Routes with no table entry are ALLOWED for any recognised role.

        This default-allow is deliberate; if it ever changes to default-deny
        this test should be updated along with the route tables.
        """
        assert can_access_route("viewer", "/some/unmapped/route") is True
        assert can_access_route("brand", "/dashboard/forges/abc/captures") is True

    def test_unknown_role_denied(self):
        assert can_access_route("intruder", "/some/unmapped/route") is False
        assert can_access_route(None, "/dashboard") is False
