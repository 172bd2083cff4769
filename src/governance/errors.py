"""
Typed authorization errors.

Every check in the pipeline raises one of these instead of returning a
boolean, so callers can surface a machine-checkable ``kind`` together with
the offending identifiers.  Messages say *what* is not permitted, never
*why* a table or column is sensitive.
"""
from __future__ import annotations

from typing import Any


class AuthError(Exception):
    """Base class for every pipeline rejection."""

    kind: str = "auth_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message, "details": self.details()}


class EmptyQuery(AuthError):
    kind = "empty_query"

    def __init__(self) -> None:
        super().__init__("SQL query must not be empty.")


class MultiStatementRejected(AuthError):
    kind = "multi_statement_rejected"

    def __init__(self, count: int):
        super().__init__(
            f"Multiple SQL statements are not allowed (found {count}). "
            "Submit one query at a time."
        )
        self.count = count

    def details(self) -> dict[str, Any]:
        return {"statements": self.count}


class ForbiddenOperation(AuthError):
    kind = "forbidden_operation"

    def __init__(self, keyword: str, message: str | None = None):
        super().__init__(
            message or f"Forbidden operation detected: '{keyword}'. Only read queries are permitted."
        )
        self.keyword = keyword

    def details(self) -> dict[str, Any]:
        return {"keyword": self.keyword}


class SchemaViolation(AuthError):
    kind = "schema_violation"

    def __init__(self, errors: list[str], invalid_tables: list[str], invalid_columns: list[tuple[str, str]]):
        super().__init__("SQL references unknown tables or columns: " + "; ".join(errors))
        self.errors = errors
        self.invalid_tables = invalid_tables
        self.invalid_columns = invalid_columns

    def details(self) -> dict[str, Any]:
        return {
            "invalid_tables": self.invalid_tables,
            "invalid_columns": [f"{t}.{c}" for t, c in self.invalid_columns],
        }


class PolicyMissing(AuthError):
    kind = "policy_missing"

    def __init__(self, role: str, connection_id: str):
        super().__init__(
            f"No data access policy is configured for role '{role}' on this connection. "
            "Contact your administrator."
        )
        self.role = role
        self.connection_id = connection_id

    def details(self) -> dict[str, Any]:
        return {"role": self.role, "connection_id": self.connection_id}


class TableAccessDenied(AuthError):
    kind = "table_access_denied"

    def __init__(self, tables: list[str]):
        super().__init__(f"Access to the following tables is not permitted: {', '.join(tables)}.")
        self.tables = tables

    def details(self) -> dict[str, Any]:
        return {"tables": self.tables}


class SelectStarBlocked(AuthError):
    kind = "select_star_blocked"

    def __init__(self, tables: list[str]):
        super().__init__(
            f"SELECT * (or alias.*) is not permitted on: {', '.join(tables)}. "
            "Select the permitted columns explicitly."
        )
        self.tables = tables

    def details(self) -> dict[str, Any]:
        return {"tables": self.tables}


class ColumnAccessBlocked(AuthError):
    kind = "column_access_blocked"

    def __init__(self, columns: list[str]):
        super().__init__(
            f"Query references columns that are not permitted: {', '.join(columns)}. "
            "Remove them or ask an administrator to adjust column permissions."
        )
        self.columns = columns

    def details(self) -> dict[str, Any]:
        return {"columns": self.columns}


class SensitiveFieldBlocked(AuthError):
    kind = "sensitive_field_blocked"

    def __init__(self, columns: list[str]):
        super().__init__(
            f"Query reads credential or secret fields, which are never returned: {', '.join(columns)}."
        )
        self.columns = columns

    def details(self) -> dict[str, Any]:
        return {"columns": self.columns}
