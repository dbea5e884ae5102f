"""User sync subscriber and Lambda handler.

Runs the attribute resolver for one login event. The Lambda handler takes a
JSON payload carrying the asserted attributes and the account state, loads a
fresh configuration snapshot and returns the resulting account state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import boto3
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import SettingsError

import config
from attribute_resolver import AttributeResolver, AttributeSet, SyncResult
from entities import BaseModel
from entities.user import Account, UserAccount
from errors import ConfigurationError, handle_errors
from mapping_config import MappingConfiguration, SettingsConfiguration, load_configuration

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client

logger = config.get_logger(service="user_sync")

# Module-level boto3 client, reused across invocations of a warm container
_s3_client: S3Client = boto3.client("s3")


@dataclass
class UserSyncEvent:
    """A login event whose account may need to be saved afterwards."""

    account: Account
    attributes: AttributeSet
    account_changed: bool = False

    def mark_account_changed(self) -> None:
        self.account_changed = True


def on_user_sync(
    event: UserSyncEvent,
    mapping: MappingConfiguration,
    settings: SettingsConfiguration,
    resolver: AttributeResolver | None = None,
) -> SyncResult:
    if resolver is None:
        resolver = AttributeResolver(change_tracking=config.get_config().change_tracking)

    result = resolver.resolve(event.attributes, mapping, settings, event.account)
    if result.changed:
        event.mark_account_changed()
    return result


class AccountPayload(BaseModel):
    fields: dict[str, Any] = Field(default_factory=dict)
    roles: frozenset[str] = Field(default_factory=frozenset)
    writable_fields: frozenset[str] | None = None


class UserSyncPayload(BaseModel):
    attributes: dict[str, tuple[str, ...]] = Field(default_factory=dict)
    account: AccountPayload = Field(default_factory=AccountPayload)

    @field_validator("attributes", mode="before")
    @classmethod
    def single_values_to_lists(cls, value: object) -> object:  # noqa: ANN101
        if isinstance(value, dict):
            return {name: [values] if isinstance(values, str) else values for name, values in value.items()}
        return value


def _load_sync_configuration() -> tuple[config.Config, MappingConfiguration, SettingsConfiguration]:
    # Settings that fail validation are configuration faults, not payload errors
    try:
        cfg = config.get_config()
        mapping, settings = load_configuration(cfg, _s3_client)
    except (ValidationError, SettingsError) as e:
        raise ConfigurationError(f"Invalid user sync configuration: {e}") from e
    return cfg, mapping, settings


@handle_errors
def lambda_handler(event: dict[str, Any], context: object) -> dict[str, Any]:  # noqa: ARG001
    """Lambda handler entry point for one user sync.

    Args:
        event: {"attributes": {...}, "account": {"fields": {...}, "roles": [...], "writable_fields": [...]}}
        context: Lambda context.

    Returns:
        Dictionary with the sync result and the account state after the sync.
    """
    payload = UserSyncPayload.model_validate(event)
    cfg, mapping, settings = _load_sync_configuration()

    account = UserAccount(
        fields=dict(payload.account.fields),
        roles=set(payload.account.roles),
        writable_fields=payload.account.writable_fields,
    )
    sync_event = UserSyncEvent(account=account, attributes=payload.attributes)
    result = on_user_sync(sync_event, mapping, settings, AttributeResolver(change_tracking=cfg.change_tracking))

    return {
        "statusCode": 200,
        "body": {
            "success": True,
            "changed": sync_event.account_changed,
            "fields": account.fields,
            "roles": sorted(account.roles),
            "matched_group": result.matched_group,
            "field_mutations": [
                {"field_name": m.field_name, "attribute": m.attribute, "old_value": m.old_value, "new_value": m.new_value}
                for m in result.field_mutations
            ],
        },
    }
