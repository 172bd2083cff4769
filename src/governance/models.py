"""
Principal and policy records -- the administrator-authored inputs of the
authorization pipeline.

These are supplied by external collaborators (identity provider, policy
store) and are read-only for the duration of a request.
"""
from __future__ import annotations

import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Role(str, Enum):
    ADMIN = "admin"
    ANALYST = "analyst"
    VIEWER = "viewer"


class Operation(str, Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class DataScope(str, Enum):
    ALL = "all"
    USER_RELATED = "user_related"


class MaskType(str, Enum):
    HASH = "hash"
    PARTIAL = "partial"
    FULL = "full"


class Principal(BaseModel):
    """The authenticated caller."""

    id: str
    email: str = ""
    display_name: str = ""
    role: Role = Role.VIEWER
    organization_id: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class ColumnPermission(BaseModel):
    column_name: str
    accessible: bool = True
    masked: bool = False
    mask_type: MaskType | None = None


class UserRelationFields(BaseModel):
    """Columns linking a table's rows to the principal."""

    user_id_col: str | None = Field(None, description="Column holding the principal id")
    user_email_col: str | None = Field(None, description="Column holding the principal e-mail")
    user_name_col: str | None = Field(None, description="Column holding the principal display name")


class TablePermission(BaseModel):
    table_name: str
    allowed_operations: set[Operation] = Field(default_factory=lambda: {Operation.SELECT})
    column_permissions: list[ColumnPermission] = Field(default_factory=list)
    data_scope: DataScope = DataScope.ALL
    row_level_filter: str | None = Field(
        None,
        description="WHERE predicate with {{user_id}} / {{user_email}} / {{user_name}} / {{user_role}} placeholders",
    )
    user_relation_fields: UserRelationFields | None = None
    enabled: bool = True


class PolicyRecord(BaseModel):
    """One permission set for an (organization, connection, role) triple."""

    id: str
    name: str = ""
    organization_id: str
    database_connection_id: str
    role: Role
    table_permissions: list[TablePermission] = Field(default_factory=list)
    updated_at: datetime.datetime = Field(
        default_factory=lambda: datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)
    )

    @field_validator("updated_at")
    @classmethod
    def _assume_utc(cls, v: datetime.datetime) -> datetime.datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=datetime.timezone.utc)
        return v


class QueryResult(BaseModel):
    """Rows returned by the executor; ``rows`` are keyed by output column name."""

    columns: list[str] = Field(default_factory=list)
    rows: list[dict[str, Any]] = Field(default_factory=list)
    column_name_map: dict[str, str] = Field(
        default_factory=dict, description="Original column name -> display name",
    )

    @property
    def row_count(self) -> int:
        return len(self.rows)
