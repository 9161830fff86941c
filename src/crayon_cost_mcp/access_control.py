"""
Caller authentication and organization/role authorization.

A principal is resolved once per request (bearer token on the hosted
transport, configured identity on stdio) and every tool call is authorized
against it before the upstream API is touched.
"""

import secrets
from dataclasses import dataclass
from enum import StrEnum

from .audit import log_security_event
from .config import Settings
from .errors import AuthenticationError, ForbiddenError, MissingOrganizationError


class Role(StrEnum):
    VIEWER = "viewer"
    EDITOR = "editor"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    id: str
    organizations: frozenset[int]
    roles: frozenset[str]
    # Development principal only: any organization is in scope
    unrestricted: bool = False

    def may_access(self, organization_id: int) -> bool:
        return self.unrestricted or organization_id in self.organizations

    def has_role(self, role: str) -> bool:
        """`admin` satisfies any role."""
        return Role.ADMIN in self.roles or role in self.roles


class AccessControl:
    """Resolves principals and enforces organization/role access."""

    def __init__(self, settings: Settings):
        self.auth_enabled = settings.auth_enabled
        self._token = settings.auth_token
        self._principal = Principal(
            id="token-user",
            organizations=frozenset(settings.allowed_organizations),
            roles=frozenset(settings.roles),
        )
        self._dev_principal = Principal(
            id="dev-user",
            organizations=frozenset(settings.allowed_organizations),
            roles=frozenset({Role.ADMIN.value}),
            unrestricted=not settings.allowed_organizations,
        )

    def local_principal(self) -> Principal:
        """Principal for the local stdio transport (no bearer credential involved)."""
        if not self.auth_enabled:
            return self._dev_principal
        return self._principal

    def authenticate(self, authorization_header: str | None) -> Principal:
        """
        Resolve the caller from an `Authorization: Bearer <token>` header.

        Raises:
            AuthenticationError: Header missing/malformed or token mismatch
        """
        if not self.auth_enabled:
            return self._dev_principal

        if not self._token:
            log_security_event("auth_failure", None, {"reason": "auth_token_not_configured"})
            raise AuthenticationError("Authentication is enabled but AUTH_TOKEN is not configured")

        if not authorization_header:
            log_security_event("auth_failure", None, {"reason": "missing_credentials"})
            raise AuthenticationError("Missing bearer token")

        scheme, _, token = authorization_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            log_security_event("auth_failure", None, {"reason": "malformed_authorization_header"})
            raise AuthenticationError("Malformed authorization header")

        if not secrets.compare_digest(token.strip().encode(), self._token.encode()):
            log_security_event("auth_failure", None, {"reason": "invalid_token"})
            raise AuthenticationError("Invalid bearer token")

        return self._principal

    def authorize(
        self,
        principal: Principal,
        organization_id: int | None,
        required_role: str,
        organization_required: bool = True,
    ) -> None:
        """
        Check that `principal` may act on `organization_id` with `required_role`.

        Args:
            principal: Resolved caller
            organization_id: Organization in scope, None when the call names none
            required_role: Role the tool needs
            organization_required: False for tools where an omitted organization
                                   means "all organizations" (admin only)

        Raises:
            ForbiddenError: Role missing, or organization outside the allow-list
            MissingOrganizationError: Organization required but not given
        """
        if not principal.has_role(required_role):
            log_security_event(
                "unauthorized_access",
                principal.id,
                {
                    "reason": "insufficient_role",
                    "required_role": required_role,
                    "roles": sorted(principal.roles),
                    "attempted_organization_id": organization_id,
                },
            )
            raise ForbiddenError(f"Role '{required_role}' required")

        if organization_id is None:
            if not organization_required and principal.has_role(Role.ADMIN):
                return
            raise MissingOrganizationError("organizationId is required")

        if not principal.may_access(organization_id):
            log_security_event(
                "unauthorized_access",
                principal.id,
                {
                    "reason": "organization_not_allowed",
                    "attempted_organization_id": organization_id,
                    "allowed_organizations": sorted(principal.organizations),
                },
            )
            raise ForbiddenError(f"Access denied to organization {organization_id}")

    def check_role(self, principal: Principal, required_role: str) -> None:
        """Role check for tools scoped to a subscription, tenant or plan."""
        if not principal.has_role(required_role):
            log_security_event(
                "unauthorized_access",
                principal.id,
                {
                    "reason": "insufficient_role",
                    "required_role": required_role,
                    "roles": sorted(principal.roles),
                },
            )
            raise ForbiddenError(f"Role '{required_role}' required")
