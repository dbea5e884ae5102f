"""User mapping configuration for the SAML user sync.

Two documents drive a sync: the mapping document (field mappings and group
rules) and the settings document (declared IdP attributes, kept and default
roles, account linking). This module turns both into immutable snapshots,
validates them, and carries the small rules the admin forms rely on.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Literal

from pydantic import Field, field_validator

from config import get_logger, load_document_from_s3
from entities import BaseModel
from entities.user import Role
from errors import MappingConfigurationError

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client

    from config import Config

logger = get_logger(service="mapping_config")


def checked_keys(value: Any) -> frozenset[str]:  # noqa: ANN401
    """Interpret a checkbox-style value as a set of ids.

    Args:
        value: Either an id -> flag map (unchecked entries carry a falsy
            value such as ``0`` or ``False``), a list of ids, a single id,
            or ``None``.

    Returns:
        The ids whose flag is truthy.
    """
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset([value]) if value else frozenset()
    if isinstance(value, Mapping):
        return frozenset(str(key) for key, flag in value.items() if flag)
    if isinstance(value, Iterable):
        return frozenset(str(item) for item in value if item)
    raise MappingConfigurationError(f"Cannot interpret {value!r} as a set of ids")


def parse_attribute_list(raw: str | Iterable[str] | None) -> tuple[str, ...]:
    """Split the newline-delimited attribute list, trimming each entry."""
    if raw is None:
        return ()
    lines = raw.splitlines() if isinstance(raw, str) else list(raw)
    return tuple(line.strip() for line in lines if line and line.strip())


class FieldMapping(BaseModel):
    field_name: str
    attribute: str | None = None
    use_account_linking: bool = False

    @field_validator("attribute", mode="before")
    @classmethod
    def empty_attribute_is_none(cls, value: object) -> object:  # noqa: ANN101
        if value is None:
            return None
        return str(value).strip() or None


class GroupRule(BaseModel):
    name: str
    roles: frozenset[str] = Field(default_factory=frozenset)

    @field_validator("name", mode="before")
    @classmethod
    def missing_name_is_empty(cls, value: object) -> object:  # noqa: ANN101
        return "" if value is None else str(value)

    @field_validator("roles", mode="before")
    @classmethod
    def roles_from_checkboxes(cls, value: object) -> frozenset[str]:  # noqa: ANN101
        return checked_keys(value)


class RoleSettings(BaseModel):
    roles_to_keep: frozenset[str] = Field(default_factory=frozenset)
    default_roles: frozenset[str] = Field(default_factory=frozenset)


class MappingConfiguration(BaseModel):
    field_mappings: tuple[FieldMapping, ...] = ()
    group_rules: tuple[GroupRule, ...] = ()

    def get_field_mapping(self, field_name: str) -> FieldMapping | None:  # noqa: ANN101
        for mapping in self.field_mappings:
            if mapping.field_name == field_name:
                return mapping
        return None


class SettingsConfiguration(BaseModel):
    attributes: tuple[str, ...] = ()
    role_settings: RoleSettings = Field(default_factory=RoleSettings)
    linking_conjunction: Literal["AND", "OR"] = "OR"


class LinkingCriteria(BaseModel):
    conjunction: Literal["AND", "OR"]
    conditions: dict[str, str]


def _section(document: Mapping, key: str) -> Mapping:
    section = document.get(key)
    if section is None:
        return {}
    if not isinstance(section, Mapping):
        raise MappingConfigurationError(f"'{key}' must be an object, got {type(section).__name__}")
    return section


def _roles_setting(user_roles: Mapping, key: str) -> frozenset[str]:
    # Stored either directly as a checkbox map or nested under "roles"
    value = user_roles.get(key)
    if isinstance(value, Mapping) and "roles" in value:
        value = value["roles"]
    return checked_keys(value)


def parse_mapping_document(document: Mapping[str, Any]) -> MappingConfiguration:
    """Build a MappingConfiguration from the raw mapping document.

    Document shape::

        {
            "user_mapping": {
                "<field_name>": {"attribute": "<idp attribute>", "settings": {"use_account_linking": true}}
            },
            "mapper": {"group": [{"name": "<attribute value>", "roles": {"<role id>": "<role id>", "<role id>": 0}}]}
        }

    Field mappings and group rules keep their document order.

    Raises:
        MappingConfigurationError: If a section has the wrong structure.
    """
    field_mappings: list[FieldMapping] = []
    for field_name, entry in _section(document, "user_mapping").items():
        if entry is None:
            entry = {}
        if not isinstance(entry, Mapping):
            raise MappingConfigurationError(f"Mapping for field '{field_name}' must be an object")
        settings = entry.get("settings")
        if not isinstance(settings, Mapping):
            settings = {}
        field_mappings.append(
            FieldMapping(
                field_name=str(field_name),
                attribute=entry.get("attribute"),
                use_account_linking=bool(settings.get("use_account_linking", False)),
            )
        )

    groups = _section(document, "mapper").get("group") or []
    if isinstance(groups, Mapping):
        # Numerically keyed objects come out of some config exports instead of lists
        groups = list(groups.values())
    if not isinstance(groups, Sequence) or isinstance(groups, str):
        raise MappingConfigurationError("'mapper.group' must be a list of group rules")

    group_rules: list[GroupRule] = []
    for i, rule in enumerate(groups):
        if not isinstance(rule, Mapping):
            raise MappingConfigurationError(f"Group rule {i}: must be an object")
        group_rules.append(GroupRule(name=rule.get("name"), roles=rule.get("roles")))

    return MappingConfiguration(field_mappings=tuple(field_mappings), group_rules=tuple(group_rules))


def parse_settings_document(document: Mapping[str, Any]) -> SettingsConfiguration:
    """Build a SettingsConfiguration from the raw settings document.

    Reads ``user_mapping.attributes``, ``user_roles.keep`` (or
    ``user_roles.keep.roles``), ``user_roles.default`` (or
    ``user_roles.default.roles``) and ``account.linking.conjunction``.

    Raises:
        MappingConfigurationError: If a section has the wrong structure or the
            conjunction is not AND/OR.
    """
    user_roles = _section(document, "user_roles")
    linking = _section(_section(document, "account"), "linking")

    conjunction = str(linking.get("conjunction") or "OR").upper()
    if conjunction not in ("AND", "OR"):
        raise MappingConfigurationError(f"account.linking.conjunction must be 'AND' or 'OR', got '{conjunction}'")

    return SettingsConfiguration(
        attributes=parse_attribute_list(_section(document, "user_mapping").get("attributes")),
        role_settings=RoleSettings(
            roles_to_keep=_roles_setting(user_roles, "keep"),
            default_roles=_roles_setting(user_roles, "default"),
        ),
        linking_conjunction=conjunction,  # type: ignore[arg-type]
    )


def _load_document(s3_client: S3Client, bucket_name: str, s3_key: str, inline: dict) -> dict:
    if not s3_key:
        return dict(inline)

    location = f"s3://{bucket_name}/{s3_key}"
    try:
        document = load_document_from_s3(s3_client, bucket_name, s3_key)
    except json.JSONDecodeError as e:
        raise MappingConfigurationError(f"Configuration document {location} is not valid JSON: {e}") from e
    if not isinstance(document, dict):
        raise MappingConfigurationError(f"Configuration document {location} must be a JSON object")
    return document


def load_configuration(cfg: Config, s3_client: S3Client) -> tuple[MappingConfiguration, SettingsConfiguration]:
    """Fetch both documents and return fresh snapshots for one sync event.

    Documents come from S3 when ``mapping_s3_key``/``settings_s3_key`` are
    set, otherwise from the inline ``user_mapping``/``user_settings`` values.
    """
    mapping_document = _load_document(s3_client, cfg.config_bucket_name, cfg.mapping_s3_key, cfg.user_mapping)
    settings_document = _load_document(s3_client, cfg.config_bucket_name, cfg.settings_s3_key, cfg.user_settings)

    mapping = parse_mapping_document(mapping_document)
    settings = parse_settings_document(settings_document)

    errors = validate_configuration(mapping, settings)
    for error in errors:
        logger.warning(f"User mapping configuration: {error}")

    logger.debug(
        "Loaded user mapping configuration",
        extra={
            "field_mappings": len(mapping.field_mappings),
            "group_rules": len(mapping.group_rules),
            "roles_to_keep": settings.role_settings.roles_to_keep,
            "default_roles": settings.role_settings.default_roles,
        },
    )
    return mapping, settings


def validate_configuration(
    mapping: MappingConfiguration,
    settings: SettingsConfiguration,
    known_roles: Iterable[Role] | None = None,
) -> list[str]:
    """Validate the configuration and return a list of problems.

    Validates:
        - Field mappings reference attributes from the declared attribute
          list (skipped when no attributes are declared)
        - Group rules have a name
        - Group rule names are unique (only the first duplicate is ever used)
        - Every referenced role exists in the role catalogue, when given

    Args:
        mapping: The mapping snapshot.
        settings: The settings snapshot.
        known_roles: Optional role catalogue.

    Returns:
        List of validation error messages. Empty if valid.
    """
    errors: list[str] = []

    declared = set(settings.attributes)
    if declared:
        for field_mapping in mapping.field_mappings:
            if field_mapping.attribute and field_mapping.attribute not in declared:
                errors.append(
                    f"Field '{field_mapping.field_name}': attribute '{field_mapping.attribute}' is not a declared IdP attribute"
                )

    seen_names: set[str] = set()
    for i, rule in enumerate(mapping.group_rules):
        if not rule.name:
            errors.append(f"Group rule {i}: missing 'name'")
        elif rule.name in seen_names:
            errors.append(f"Group rule {i}: duplicate name '{rule.name}' is shadowed by an earlier rule")
        seen_names.add(rule.name)

    if known_roles is not None:
        known_ids = {role.id for role in known_roles}
        referenced: list[tuple[str, frozenset[str]]] = [
            (f"Group rule '{rule.name}'", rule.roles) for rule in mapping.group_rules
        ]
        referenced.append(("user_roles.keep", settings.role_settings.roles_to_keep))
        referenced.append(("user_roles.default", settings.role_settings.default_roles))
        for where, role_ids in referenced:
            for role_id in sorted(role_ids - known_ids):
                errors.append(f"{where}: unknown role '{role_id}'")

    return errors


def attributes_in_use(
    previous_attributes: str | Iterable[str] | None,
    updated_attributes: str | Iterable[str] | None,
    mapping: MappingConfiguration,
) -> dict[str, list[str]]:
    """Find removed attributes that field mappings still reference.

    Args:
        previous_attributes: The attribute list currently saved.
        updated_attributes: The attribute list about to be saved.
        mapping: The current mapping snapshot.

    Returns:
        Removed attribute name -> field names that still map from it.
    """
    removed = set(parse_attribute_list(previous_attributes)) - set(parse_attribute_list(updated_attributes))
    in_use: dict[str, list[str]] = {}
    for field_mapping in mapping.field_mappings:
        if field_mapping.attribute and field_mapping.attribute in removed:
            in_use.setdefault(field_mapping.attribute, []).append(field_mapping.field_name)
    return in_use


def attribute_options(settings: SettingsConfiguration) -> dict[str, str]:
    return {attribute: attribute for attribute in settings.attributes}


def role_options(roles: Iterable[Role]) -> dict[str, str]:
    """Roles an admin can pick: enabled roles except anonymous/authenticated."""
    return {role.id: role.label for role in roles if role.status and not role.is_pseudo_role}


def linking_criteria(
    attributes: Mapping[str, Sequence[str] | str],
    mapping: MappingConfiguration,
    settings: SettingsConfiguration,
) -> LinkingCriteria:
    """Collect field values to look up an existing account with.

    Only mappings flagged ``use_account_linking`` whose attribute carries a
    value take part. The lookup itself belongs to the caller.
    """
    conditions: dict[str, str] = {}
    for field_mapping in mapping.field_mappings:
        if not field_mapping.use_account_linking or not field_mapping.attribute:
            continue
        values = attributes.get(field_mapping.attribute)
        if isinstance(values, str):
            values = [values]
        if values:
            conditions[field_mapping.field_name] = values[0]
    return LinkingCriteria(conjunction=settings.linking_conjunction, conditions=conditions)
