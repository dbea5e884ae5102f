"""Account-side entities touched by a user sync.

The resolver never creates or persists accounts. It talks to whatever the
caller hands it through the ``Account`` protocol; ``UserAccount`` is the
in-memory implementation used by the Lambda entry point and the tests.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from errors import AccountMutationError

from .model import BaseModel

ANONYMOUS_ROLE = "anonymous"
AUTHENTICATED_ROLE = "authenticated"


@runtime_checkable
class Account(Protocol):
    """Mutable account handle supplied by the caller for one sync."""

    def get_field(self, field_name: str) -> Any: ...  # noqa: ANN401

    def set_field(self, field_name: str, value: Any) -> None: ...  # noqa: ANN401

    def get_roles(self) -> frozenset[str]: ...

    def has_role(self, role_id: str) -> bool: ...

    def add_role(self, role_id: str) -> None: ...

    def set_roles(self, role_ids: Iterable[str]) -> None: ...


@dataclass
class UserAccount:
    """In-memory account.

    Attributes:
        fields: Field name to value.
        roles: Role ids currently held.
        writable_fields: Fields that accept writes. ``None`` means every field
            except ``roles`` is writable.
    """

    fields: dict[str, Any] = field(default_factory=dict)
    roles: set[str] = field(default_factory=set)
    writable_fields: frozenset[str] | None = None

    def get_field(self, field_name: str) -> Any:  # noqa: ANN401
        return self.fields.get(field_name)

    def set_field(self, field_name: str, value: Any) -> None:  # noqa: ANN401
        if field_name == "roles":
            raise AccountMutationError("The 'roles' field can only be changed through role operations")
        if self.writable_fields is not None and field_name not in self.writable_fields:
            raise AccountMutationError(f"Field '{field_name}' is read-only or does not exist")
        self.fields[field_name] = value

    def get_roles(self) -> frozenset[str]:
        return frozenset(self.roles)

    def has_role(self, role_id: str) -> bool:
        return role_id in self.roles

    def add_role(self, role_id: str) -> None:
        self.roles.add(role_id)

    def set_roles(self, role_ids: Iterable[str]) -> None:
        self.roles = set(role_ids)


class Role(BaseModel):
    id: str
    label: str
    status: bool = True

    @property
    def is_pseudo_role(self) -> bool:  # noqa: ANN101
        return self.id in (ANONYMOUS_ROLE, AUTHENTICATED_ROLE)
