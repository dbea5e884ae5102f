"""Attribute resolution engine for the SAML user sync.

This module decides how asserted IdP attributes change a local account:
which fields to set, which role group applies, and which kept and default
roles are merged in afterwards. It reports whether the account changed.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Literal

from config import get_logger
from mapping_config import GroupRule, MappingConfiguration, RoleSettings, SettingsConfiguration

if TYPE_CHECKING:
    from entities.user import Account

logger = get_logger(service="attribute_resolver")

AttributeSet = Mapping[str, Sequence[str]]
ChangeTracking = Literal["strict", "attempted"]

ROLES_FIELD = "roles"

_MASK_PREFIX_LEN = 5
_MASK_SUFFIX_LEN = 5
_MIN_LENGTH_FOR_MASKING = _MASK_PREFIX_LEN + _MASK_SUFFIX_LEN

# Fields whose values are personal data and are masked in logs
_SENSITIVE_FIELDS = frozenset(
    {
        "name",
        "mail",
        "init",
        "displayName",
        "givenName",
        "familyName",
        "field_first_name",
        "field_last_name",
    }
)


def mask_value(value: object) -> str:
    """Mask a value for logging - show first 5 and last 5 characters only.

    Args:
        value: The value to mask.

    Returns:
        Masked value like "ada.l*****e.org" or the value unchanged if too short.
    """
    text = str(value)
    if len(text) <= _MIN_LENGTH_FOR_MASKING:
        return text
    return f"{text[:_MASK_PREFIX_LEN]}*****{text[-_MASK_SUFFIX_LEN:]}"


def _loggable(field_name: str, value: object) -> object:
    return mask_value(value) if field_name in _SENSITIVE_FIELDS else value


class FieldPolicy(str, Enum):
    """How a resolved attribute value is applied to a field."""

    PLAIN_FIELD = "plain_field"
    ROLE_GROUP = "role_group"


FIELD_POLICIES: Mapping[str, FieldPolicy] = MappingProxyType({ROLES_FIELD: FieldPolicy.ROLE_GROUP})


def policy_for_field(field_name: str) -> FieldPolicy:
    return FIELD_POLICIES.get(field_name, FieldPolicy.PLAIN_FIELD)


def first_value(values: Sequence[str] | str | None) -> str | None:
    """Return the first asserted value, or None when there is nothing to use."""
    if values is None:
        return None
    if isinstance(values, str):
        return values
    if len(values) == 0:
        return None
    return values[0]


@dataclass(frozen=True)
class FieldMutation:
    """A field write applied to the account."""

    field_name: str
    attribute: str
    old_value: Any
    new_value: Any


@dataclass
class SyncResult:
    """Outcome of resolving one user sync.

    Attributes:
        changed: Whether the account must be saved.
        field_mutations: Field writes applied, in configuration order.
        roles: Role set held by the account after the sync.
        matched_group: Name of the group rule that matched, if any.
        retained_roles: Kept roles that had to be restored.
        granted_default_roles: Default roles that had to be added.
    """

    changed: bool = False
    field_mutations: list[FieldMutation] = field(default_factory=list)
    roles: frozenset[str] = frozenset()
    matched_group: str | None = None
    retained_roles: set[str] = field(default_factory=set)
    granted_default_roles: set[str] = field(default_factory=set)

    def mark_changed(self) -> None:
        self.changed = True


def find_group_rule(value: str, group_rules: Iterable[GroupRule]) -> GroupRule | None:
    """Return the first rule whose name equals the value.

    Order matters: later rules with the same name are never consulted.
    """
    for rule in group_rules:
        if rule.name == value:
            return rule
    return None


class AttributeResolver:
    """Resolves asserted attributes into account field and role mutations.

    The resolver holds no configuration of its own. Mapping and settings
    snapshots are passed to every call so one instance can serve any
    number of sync events.
    """

    def __init__(self, change_tracking: ChangeTracking = "strict") -> None:
        """Initialize the resolver.

        Args:
            change_tracking: "strict" reports a field change only when the
                value differs from the current one. "attempted" applies and
                reports every field write. Role changes are always strict.
        """
        if change_tracking not in ("strict", "attempted"):
            raise ValueError(f"change_tracking must be 'strict' or 'attempted', got '{change_tracking}'")
        self._change_tracking = change_tracking

    @property
    def change_tracking(self) -> ChangeTracking:
        return self._change_tracking

    def resolve(
        self,
        attributes: AttributeSet,
        mapping: MappingConfiguration,
        settings: SettingsConfiguration | RoleSettings,
        account: Account,
    ) -> SyncResult:
        """Run field mappings, then kept roles, then default roles.

        Args:
            attributes: Asserted attribute name -> values.
            mapping: Field mappings and group rules.
            settings: Settings snapshot or just its role settings.
            account: The account to mutate.

        Returns:
            SyncResult describing what changed.

        Raises:
            Whatever the account raises when it rejects a write. Steps after
            the failure are not run.
        """
        role_settings = settings.role_settings if isinstance(settings, SettingsConfiguration) else settings
        origin_roles = frozenset(account.get_roles())
        result = SyncResult()

        self.resolve_field_mappings(attributes, mapping, account, result)
        self.apply_retention_and_defaults(origin_roles, role_settings, account, result)

        # Roles count as changed only when the final set differs from the one held before the sync
        result.roles = frozenset(account.get_roles())
        if result.roles != origin_roles:
            result.mark_changed()
        logger.info(
            "User sync resolved",
            extra={
                "changed": result.changed,
                "fields_set": [mutation.field_name for mutation in result.field_mutations],
                "matched_group": result.matched_group,
                "origin_roles": origin_roles,
                "roles": result.roles,
            },
        )
        return result

    def resolve_field_mappings(
        self,
        attributes: AttributeSet,
        mapping: MappingConfiguration,
        account: Account,
        result: SyncResult,
    ) -> None:
        """Apply every field mapping in configuration order.

        Mappings without an attribute, or whose attribute is missing or has
        no values, are skipped. A later mapping for the same field wins.
        """
        for field_mapping in mapping.field_mappings:
            if not field_mapping.attribute:
                continue

            value = first_value(attributes.get(field_mapping.attribute))
            if value is None:
                logger.debug(f"No value for attribute '{field_mapping.attribute}', skipping field '{field_mapping.field_name}'")
                continue

            policy = policy_for_field(field_mapping.field_name)
            if policy is FieldPolicy.ROLE_GROUP:
                self.resolve_role_group(value, mapping.group_rules, account, result)
            elif policy is FieldPolicy.PLAIN_FIELD:
                self._assign_field(field_mapping.field_name, field_mapping.attribute, value, account, result)
            else:
                raise ValueError(f"Unhandled field policy {policy!r} for field '{field_mapping.field_name}'")

    def _assign_field(self, field_name: str, attribute: str, value: str, account: Account, result: SyncResult) -> None:
        current = account.get_field(field_name)
        differs = current != value
        if not differs and self._change_tracking == "strict":
            return

        account.set_field(field_name, value)
        result.field_mutations.append(FieldMutation(field_name=field_name, attribute=attribute, old_value=current, new_value=value))
        result.mark_changed()
        logger.debug(
            f"Set field '{field_name}' from attribute '{attribute}'",
            extra={"value": _loggable(field_name, value), "differs": differs},
        )

    def resolve_role_group(
        self,
        value: str,
        group_rules: Sequence[GroupRule],
        account: Account,
        result: SyncResult,
    ) -> None:
        """Replace the account roles with the first matching rule's roles.

        When no rule matches, all roles are cleared; kept and default roles
        are merged back in afterwards by apply_retention_and_defaults.
        """
        current = frozenset(account.get_roles())
        rule = find_group_rule(value, group_rules)
        if rule is None:
            logger.debug(f"No group rule matches value '{mask_value(value)}', clearing roles")
            target: frozenset[str] = frozenset()
        else:
            logger.debug(f"Group rule '{rule.name}' matched", extra={"roles": rule.roles})
            result.matched_group = rule.name
            target = rule.roles

        if target != current:
            account.set_roles(target)

    def apply_retention_and_defaults(
        self,
        origin_roles: frozenset[str],
        role_settings: RoleSettings,
        account: Account,
        result: SyncResult,
    ) -> None:
        """Restore kept roles held before the sync, then add default roles."""
        for role_id in sorted(origin_roles & role_settings.roles_to_keep):
            if not account.has_role(role_id):
                account.add_role(role_id)
                result.retained_roles.add(role_id)

        for role_id in sorted(role_settings.default_roles):
            if not account.has_role(role_id):
                account.add_role(role_id)
                result.granted_default_roles.add(role_id)

        if result.retained_roles or result.granted_default_roles:
            logger.debug(
                "Merged kept and default roles",
                extra={"retained_roles": result.retained_roles, "granted_default_roles": result.granted_default_roles},
            )
