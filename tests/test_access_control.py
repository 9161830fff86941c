"""
Tests for bearer authentication and organization/role authorization.
"""

from dataclasses import replace

import pytest
from structlog.testing import capture_logs

from crayon_cost_mcp.access_control import AccessControl, Principal, Role
from crayon_cost_mcp.errors import (
    AuthenticationError,
    ForbiddenError,
    MissingOrganizationError,
)


def _security_events(logs, kind):
    return [e for e in logs if e["event"] == "security_event" and e["kind"] == kind]


class TestAuthenticate:
    """Tests for resolving the caller from the Authorization header"""

    def test_valid_bearer_token(self, access_control):
        principal = access_control.authenticate("Bearer s3cret-token")

        assert principal.id == "token-user"
        assert principal.organizations == frozenset({10})
        assert principal.roles == frozenset({"viewer"})

    def test_scheme_is_case_insensitive(self, access_control):
        assert access_control.authenticate("bearer s3cret-token").id == "token-user"

    @pytest.mark.parametrize(
        "header,reason",
        [
            (None, "missing_credentials"),
            ("", "missing_credentials"),
            ("Basic s3cret-token", "malformed_authorization_header"),
            ("Bearer ", "malformed_authorization_header"),
            ("Bearer wrong-token", "invalid_token"),
        ],
    )
    def test_rejected_headers_logged(self, access_control, header, reason):
        with capture_logs() as logs:
            with pytest.raises(AuthenticationError):
                access_control.authenticate(header)

        events = _security_events(logs, "auth_failure")
        assert len(events) == 1
        assert events[0]["reason"] == reason

    def test_fails_closed_without_configured_token(self, settings):
        controls = AccessControl(replace(settings, auth_token=None))
        with pytest.raises(AuthenticationError, match="AUTH_TOKEN"):
            controls.authenticate("Bearer anything")

    def test_auth_disabled_returns_dev_principal(self, settings):
        controls = AccessControl(replace(settings, auth_enabled=False))
        principal = controls.authenticate(None)

        assert principal.id == "dev-user"
        assert principal.has_role(Role.ADMIN)

    def test_local_principal(self, settings, access_control):
        assert access_control.local_principal().id == "token-user"
        dev = AccessControl(replace(settings, auth_enabled=False)).local_principal()
        assert dev.id == "dev-user"


class TestDevPrincipal:
    def test_unrestricted_without_allow_list(self, settings):
        controls = AccessControl(
            replace(settings, auth_enabled=False, allowed_organizations=[])
        )
        principal = controls.local_principal()

        assert principal.unrestricted
        assert principal.may_access(12345)

    def test_keeps_allow_list_when_configured(self, settings):
        principal = AccessControl(replace(settings, auth_enabled=False)).local_principal()

        assert not principal.unrestricted
        assert principal.may_access(10)
        assert not principal.may_access(20)


class TestAuthorize:
    """Tests for role and organization checks"""

    @pytest.fixture
    def viewer(self):
        return Principal("viewer-user", frozenset({10}), frozenset({"viewer"}))

    @pytest.fixture
    def admin(self):
        return Principal("admin-user", frozenset({10}), frozenset({"admin"}))

    def test_allowed_organization(self, access_control, viewer):
        access_control.authorize(viewer, 10, Role.VIEWER)

    def test_organization_outside_allow_list(self, access_control, viewer):
        with capture_logs() as logs:
            with pytest.raises(ForbiddenError):
                access_control.authorize(viewer, 20, Role.VIEWER)

        events = _security_events(logs, "unauthorized_access")
        assert len(events) == 1
        assert events[0]["attempted_organization_id"] == 20
        assert events[0]["allowed_organizations"] == [10]
        assert events[0]["principal_id"] == "viewer-user"

    def test_admin_satisfies_editor(self, access_control, admin):
        access_control.authorize(admin, 10, Role.EDITOR)
        access_control.check_role(admin, Role.EDITOR)

    def test_viewer_lacks_editor(self, access_control, viewer):
        with capture_logs() as logs:
            with pytest.raises(ForbiddenError):
                access_control.check_role(viewer, Role.EDITOR)

        events = _security_events(logs, "unauthorized_access")
        assert events[0]["reason"] == "insufficient_role"
        assert events[0]["required_role"] == "editor"

    def test_role_checked_before_organization(self, access_control, viewer):
        with pytest.raises(ForbiddenError, match="Role"):
            access_control.authorize(viewer, None, Role.EDITOR)

    def test_missing_organization(self, access_control, viewer):
        with pytest.raises(MissingOrganizationError):
            access_control.authorize(viewer, None, Role.VIEWER)

    def test_optional_organization_needs_admin(self, access_control, viewer, admin):
        access_control.authorize(admin, None, Role.VIEWER, organization_required=False)
        with pytest.raises(MissingOrganizationError):
            access_control.authorize(viewer, None, Role.VIEWER, organization_required=False)

    def test_admin_still_bound_to_allow_list(self, access_control, admin):
        with pytest.raises(ForbiddenError):
            access_control.authorize(admin, 99, Role.VIEWER)
