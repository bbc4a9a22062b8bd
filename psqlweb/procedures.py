"""Stored procedure discovery and invocation."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .connections import ConnectionProvisioner
from .errors import InvalidInputError, ProcedureExecutionError, PsqlwebError
from .models import Credentials

LOG = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"[A-Za-z0-9_]+")

LIST_PROCEDURES_SQL = """
    SELECT
        r.routine_schema AS "schema",
        r.routine_name AS "name",
        r.specific_name AS "specificName",
        COALESCE(pg_catalog.obj_description(p.oid, 'pg_proc'), '') AS "remarks"
    FROM information_schema.routines AS r
    LEFT JOIN pg_catalog.pg_proc AS p
        ON r.specific_name = p.proname || '_' || p.oid
    WHERE r.routine_type = 'PROCEDURE'
      AND r.routine_schema NOT IN ('pg_catalog', 'information_schema')
    ORDER BY r.routine_schema, r.routine_name
    LIMIT 200
"""

PARAMETERS_SQL = """
    SELECT
        ordinal_position AS "position",
        COALESCE(NULLIF(parameter_name, ''), 'param_' || ordinal_position::text) AS "name",
        parameter_mode AS "mode",
        udt_schema AS "typeSchema",
        udt_name AS "typeName",
        character_maximum_length AS "length",
        numeric_scale AS "scale",
        COALESCE(parameter_default, '') AS "defaultValue"
    FROM information_schema.parameters
    WHERE specific_name = $1
      AND specific_schema = $2
    ORDER BY ordinal_position
"""


def _required_string(value: object, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid {field}.")
    return value.strip()


class ParametersRequest(BaseModel):
    """Body of ``POST /procedures/parameters``."""

    model_config = ConfigDict(populate_by_name=True)

    schema_name: str = Field(alias="schema")
    specific_name: str = Field(alias="specificName")

    @field_validator("schema_name", mode="before")
    @classmethod
    def _check_schema(cls, value: object) -> str:
        return _required_string(value, "schema")

    @field_validator("specific_name", mode="before")
    @classmethod
    def _check_specific_name(cls, value: object) -> str:
        return _required_string(value, "specificName")


class ExecuteRequest(BaseModel):
    """Body of ``POST /procedures/execute``."""

    model_config = ConfigDict(populate_by_name=True)

    schema_name: str = Field(alias="schema")
    name: str
    parameters: list[Any] = Field(default_factory=list)

    @field_validator("schema_name", mode="before")
    @classmethod
    def _check_schema(cls, value: object) -> str:
        return _required_string(value, "schema")

    @field_validator("name", mode="before")
    @classmethod
    def _check_name(cls, value: object) -> str:
        return _required_string(value, "name")

    @field_validator("parameters", mode="before")
    @classmethod
    def _check_parameters(cls, value: object) -> object:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("Invalid parameters.")
        return value


@dataclass(frozen=True, slots=True)
class ProcedureResult:
    """Fully buffered output of a procedure call."""

    rows: list[dict[str, Any]]
    columns: list[str]


def sanitize_identifier(value: str, field: str = "identifier") -> str:
    """Return ``value`` if it is safe to quote into SQL, else reject it."""

    if not isinstance(value, str) or not IDENTIFIER_PATTERN.fullmatch(value):
        raise InvalidInputError(f"Invalid {field}.")
    return value


def build_call_statement(schema: str, name: str, param_count: int) -> str:
    placeholders = ", ".join(f"${index}" for index in range(1, param_count + 1))
    return f'CALL "{schema}"."{name}"({placeholders})'


def normalize_parameter_values(values: Iterable[Any]) -> list[Any]:
    """Empty strings mean "no value" and are bound as NULL."""

    return [None if value == "" else value for value in values]


def derive_columns(rows: Iterable[Mapping[str, Any]]) -> list[str]:
    """Union of row keys in first-seen order."""

    columns: dict[str, None] = {}
    for row in rows:
        for key in row.keys():
            columns.setdefault(key, None)
    return list(columns)


class ProcedureInvoker:
    """Runs catalog lookups and CALL statements with session credentials."""

    def __init__(self, provisioner: ConnectionProvisioner) -> None:
        self._provisioner = provisioner

    async def list_procedures(self, credentials: Credentials) -> list[dict[str, Any]]:
        return await self._fetch(
            credentials, LIST_PROCEDURES_SQL, (), failure="Failed to load stored procedures."
        )

    async def list_parameters(
        self,
        credentials: Credentials,
        schema: str,
        specific_name: str,
    ) -> list[dict[str, Any]]:
        return await self._fetch(
            credentials,
            PARAMETERS_SQL,
            (specific_name, schema),
            failure="Failed to load procedure parameters.",
        )

    async def execute(
        self,
        credentials: Credentials,
        schema: str,
        name: str,
        parameters: Sequence[Any] = (),
    ) -> ProcedureResult:
        schema = sanitize_identifier(schema, "identifier")
        name = sanitize_identifier(name, "identifier")
        values = normalize_parameter_values(parameters)
        statement = build_call_statement(schema, name, len(values))
        rows = await self._fetch(
            credentials, statement, values, failure="Failed to execute stored procedure."
        )
        LOG.info(
            "Executed stored procedure",
            extra={"schema": schema, "procedure": name, "rows": len(rows)},
        )
        return ProcedureResult(rows=rows, columns=derive_columns(rows))

    async def _fetch(
        self,
        credentials: Credentials,
        sql: str,
        args: Sequence[Any],
        *,
        failure: str,
    ) -> list[dict[str, Any]]:
        try:
            async with self._provisioner.lease(credentials) as connection:
                records = await connection.fetch(sql, *args)
        except PsqlwebError:
            raise
        except Exception as exc:
            raise ProcedureExecutionError(str(exc) or failure) from exc
        return [dict(record) for record in records or ()]


__all__ = [
    "ExecuteRequest",
    "IDENTIFIER_PATTERN",
    "ParametersRequest",
    "ProcedureInvoker",
    "ProcedureResult",
    "build_call_statement",
    "derive_columns",
    "normalize_parameter_values",
    "sanitize_identifier",
]
