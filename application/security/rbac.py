"""Role-based access control for the arbitrage engine's operation surface."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, MutableMapping, Sequence

import yaml

from execution.audit import ExecutionAuditLogger
from execution.errors import AccessDenied

__all__ = [
    "AccessController",
    "AccessPolicyConfiguration",
    "AuthorizationDecision",
    "RBACPolicy",
    "ROLE_ADMIN",
    "ROLE_EMERGENCY",
    "ROLE_OPERATOR",
    "ROLE_STRATEGIST",
    "RoleDefinition",
    "build_access_controller",
    "default_access_policy",
    "load_access_policy",
]


_LOGGER = logging.getLogger("flashroute.rbac")

ROLE_ADMIN = "admin"
ROLE_OPERATOR = "operator"
ROLE_STRATEGIST = "strategist"
ROLE_EMERGENCY = "emergency"


def _normalise_token(value: str, *, label: str) -> str:
    candidate = str(value).strip().lower()
    if not candidate:
        raise ValueError(f"{label} must be a non-empty string")
    return candidate


def _normalise_role(value: str) -> str:
    return _normalise_token(value, label="role")


def _normalise_subject(value: str) -> str:
    return _normalise_token(value, label="subject")


@dataclass(frozen=True)
class RoleDefinition:
    name: str
    description: str
    permissions: tuple[str, ...]
    inherits: tuple[str, ...] = ()


@dataclass(frozen=True)
class AuthorizationDecision:
    """Result of an authorisation evaluation."""

    allowed: bool
    subject: str
    action: str
    roles: tuple[str, ...]
    matched_role: str | None = None
    required_roles: tuple[str, ...] = ()


class RBACPolicy:
    """In-memory representation of role definitions with inheritance resolved."""

    def __init__(self, roles: Mapping[str, RoleDefinition]) -> None:
        if not roles:
            raise ValueError("At least one RBAC role must be defined")
        self._roles: dict[str, RoleDefinition] = dict(roles)
        self._resolved: MutableMapping[str, frozenset[str]] = {}
        self._permission_index: MutableMapping[str, set[str]] = {}
        for role_name in self._roles:
            actions = self._resolve_role(role_name)
            self._resolved[role_name] = actions
            for action in actions:
                self._permission_index.setdefault(action, set()).add(role_name)

    def _resolve_role(self, role_name: str, *, _stack: tuple[str, ...] = ()) -> frozenset[str]:
        if role_name not in self._roles:
            raise KeyError(f"Unknown role: {role_name}")
        if role_name in _stack:
            raise ValueError("Detected circular RBAC role inheritance")
        definition = self._roles[role_name]
        actions = set(definition.permissions)
        for parent in definition.inherits:
            actions.update(self._resolve_role(parent, _stack=_stack + (role_name,)))
        return frozenset(actions)

    @property
    def roles(self) -> tuple[str, ...]:
        return tuple(sorted(self._roles))

    def __contains__(self, role: object) -> bool:
        return isinstance(role, str) and role in self._roles

    def permissions_for_role(self, role_name: str) -> frozenset[str]:
        return self._resolved.get(role_name, frozenset())

    def roles_granting(self, action: str) -> tuple[str, ...]:
        return tuple(sorted(self._permission_index.get(action, set())))


def default_access_policy() -> RBACPolicy:
    """Built-in roles; ``admin`` inherits every other role."""

    roles = {
        ROLE_OPERATOR: RoleDefinition(
            name=ROLE_OPERATOR,
            description="Submits arbitrage requests",
            permissions=("execute_arbitrage", "execute_batch_arbitrage", "execute_strategy"),
        ),
        ROLE_STRATEGIST: RoleDefinition(
            name=ROLE_STRATEGIST,
            description="Manages strategy decision modules",
            permissions=("add_strategy", "remove_strategy", "activate_strategy"),
        ),
        ROLE_EMERGENCY: RoleDefinition(
            name=ROLE_EMERGENCY,
            description="Halts execution during incidents",
            permissions=("emergency_stop", "trip_circuit_breaker"),
        ),
        ROLE_ADMIN: RoleDefinition(
            name=ROLE_ADMIN,
            description="Owns configuration, venues, treasury and role grants",
            permissions=(
                "update_risk_params",
                "set_token_profile",
                "set_token_whitelist",
                "reset_exposure",
                "register_venue",
                "remove_venue",
                "set_treasury",
                "resume",
                "reset_circuit_breaker",
                "grant_role",
                "revoke_role",
            ),
            inherits=(ROLE_OPERATOR, ROLE_STRATEGIST, ROLE_EMERGENCY),
        ),
    }
    return RBACPolicy(roles)


class AccessController:
    """Tracks role grants per subject and enforces them per action."""

    def __init__(
        self,
        policy: RBACPolicy | None = None,
        *,
        grants: Mapping[str, Iterable[str]] | None = None,
        audit_logger: ExecutionAuditLogger | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._policy = policy or default_access_policy()
        self._grants: dict[str, set[str]] = {}
        self._audit = audit_logger
        self._logger = logger or _LOGGER
        self._lock = threading.RLock()
        for subject, roles in (grants or {}).items():
            for role in roles:
                self._grant(_normalise_subject(subject), _normalise_role(role))

    @property
    def policy(self) -> RBACPolicy:
        return self._policy

    def _grant(self, subject: str, role: str) -> bool:
        if role not in self._policy:
            raise KeyError(f"Unknown role: {role}")
        with self._lock:
            bucket = self._grants.setdefault(subject, set())
            if role in bucket:
                return False
            bucket.add(role)
            return True

    def roles_for(self, subject: str) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._grants.get(_normalise_subject(subject), set())))

    def has_role(self, subject: str, role: str) -> bool:
        return _normalise_role(role) in self.roles_for(subject)

    def subjects_with_role(self, role: str) -> tuple[str, ...]:
        role = _normalise_role(role)
        with self._lock:
            return tuple(sorted(s for s, roles in self._grants.items() if role in roles))

    def grant_role(self, subject: str, role: str, *, granted_by: str | None = None) -> bool:
        subject_key = _normalise_subject(subject)
        role_key = _normalise_role(role)
        added = self._grant(subject_key, role_key)
        if added:
            self._logger.info(
                "rbac.role_granted",
                extra={"subject": subject_key, "role": role_key, "granted_by": granted_by},
            )
            self._emit("role_granted", subject=subject_key, role=role_key, actor=granted_by)
        return added

    def revoke_role(self, subject: str, role: str, *, revoked_by: str | None = None) -> bool:
        subject_key = _normalise_subject(subject)
        role_key = _normalise_role(role)
        with self._lock:
            roles = self._grants.get(subject_key, set())
            if role_key not in roles:
                return False
            if role_key == ROLE_ADMIN and self.subjects_with_role(ROLE_ADMIN) == (subject_key,):
                raise ValueError("Cannot revoke the last remaining admin")
            roles.discard(role_key)
            if not roles:
                self._grants.pop(subject_key, None)
        self._logger.info(
            "rbac.role_revoked",
            extra={"subject": subject_key, "role": role_key, "revoked_by": revoked_by},
        )
        self._emit("role_revoked", subject=subject_key, role=role_key, actor=revoked_by)
        return True

    def evaluate(self, subject: str, action: str) -> AuthorizationDecision:
        subject_key = _normalise_subject(subject)
        action_key = _normalise_token(action, label="action")
        roles = self.roles_for(subject_key)
        for role in roles:
            if action_key in self._policy.permissions_for_role(role):
                return AuthorizationDecision(
                    allowed=True,
                    subject=subject_key,
                    action=action_key,
                    roles=roles,
                    matched_role=role,
                )
        return AuthorizationDecision(
            allowed=False,
            subject=subject_key,
            action=action_key,
            roles=roles,
            required_roles=self._policy.roles_granting(action_key),
        )

    def enforce(self, subject: str, action: str) -> AuthorizationDecision:
        """Return the allowing decision or raise :class:`AccessDenied`."""

        decision = self.evaluate(subject, action)
        if decision.allowed:
            self._logger.debug(
                "authorization.allowed",
                extra={
                    "subject": decision.subject,
                    "action": decision.action,
                    "matched_role": decision.matched_role,
                },
            )
            return decision
        self._logger.warning(
            "authorization.denied",
            extra={
                "subject": decision.subject,
                "action": decision.action,
                "roles": list(decision.roles),
                "required_roles": list(decision.required_roles),
            },
        )
        self._emit(
            "authorization_denied",
            subject=decision.subject,
            action=decision.action,
            roles=list(decision.roles),
            required_roles=list(decision.required_roles),
        )
        raise AccessDenied(decision.subject, decision.action, decision.required_roles)

    def _emit(self, event: str, **payload: Any) -> None:
        if self._audit is not None:
            self._audit.emit({"event": event, **payload})


@dataclass(frozen=True)
class AccessPolicyConfiguration:
    policy: RBACPolicy
    grants: Mapping[str, tuple[str, ...]]


def _parse_role(name: str, payload: Mapping[str, Any]) -> RoleDefinition:
    description = str(payload.get("description", "")).strip()
    if not description:
        raise ValueError(f"Role {name} is missing a description")
    permissions_payload = payload.get("permissions", ())
    if isinstance(permissions_payload, str) or not isinstance(permissions_payload, Sequence):
        raise ValueError(f"Role {name} permissions must be a list")
    inherits_payload = payload.get("inherits", ())
    if isinstance(inherits_payload, str):
        inherits_payload = [inherits_payload]
    permissions = tuple(_normalise_token(entry, label="permission") for entry in permissions_payload)
    inherits = tuple(_normalise_role(role) for role in inherits_payload)
    if not permissions and not inherits:
        raise ValueError(f"Role {name} must define or inherit at least one permission")
    return RoleDefinition(
        name=_normalise_role(name),
        description=description,
        permissions=permissions,
        inherits=inherits,
    )


def load_access_policy(path: Path | str) -> AccessPolicyConfiguration:
    """Load role definitions and subject grants from a YAML document.

    When the document omits ``roles`` the built-in policy is used.
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Access policy file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, Mapping):
        raise ValueError("Access policy must be a mapping")

    roles_payload = data.get("roles")
    if roles_payload is None:
        policy = default_access_policy()
    else:
        if not isinstance(roles_payload, Mapping):
            raise ValueError("roles must be a mapping")
        roles: dict[str, RoleDefinition] = {}
        for name, payload in roles_payload.items():
            if not isinstance(payload, Mapping):
                raise ValueError("Role definitions must be mappings")
            role = _parse_role(str(name), payload)
            roles[role.name] = role
        policy = RBACPolicy(roles)

    grants_payload = data.get("grants") or {}
    if not isinstance(grants_payload, Mapping):
        raise ValueError("grants must map subjects to role lists")
    grants: dict[str, tuple[str, ...]] = {}
    for subject, roles_value in grants_payload.items():
        if isinstance(roles_value, str):
            roles_value = [roles_value]
        resolved = tuple(_normalise_role(role) for role in roles_value or ())
        unknown = [role for role in resolved if role not in policy]
        if unknown:
            raise ValueError(f"Subject {subject} is granted unknown roles: {', '.join(unknown)}")
        grants[_normalise_subject(subject)] = resolved
    return AccessPolicyConfiguration(policy=policy, grants=grants)


def build_access_controller(
    *,
    policy_path: Path | str | None = None,
    admins: Iterable[str] = (),
    audit_logger: ExecutionAuditLogger | None = None,
) -> AccessController:
    if policy_path is not None:
        configuration = load_access_policy(policy_path)
        controller = AccessController(
            configuration.policy, grants=configuration.grants, audit_logger=audit_logger
        )
    else:
        controller = AccessController(audit_logger=audit_logger)
    for subject in admins:
        controller.grant_role(subject, ROLE_ADMIN, granted_by="bootstrap")
    return controller
