"""Tests for stored procedure discovery and invocation."""

from __future__ import annotations

from typing import Any

import pytest
from pydantic import ValidationError

from conftest import FakeConnection, FakePoolFactory
from psqlweb.config import Settings
from psqlweb.connections import ConnectionProvisioner
from psqlweb.errors import InvalidInputError, ProcedureExecutionError
from psqlweb.models import Credentials
from psqlweb.procedures import (
    PARAMETERS_SQL,
    ExecuteRequest,
    ParametersRequest,
    ProcedureInvoker,
    build_call_statement,
    derive_columns,
    normalize_parameter_values,
    sanitize_identifier,
)

ALICE = Credentials(username="alice", password="secret")


def _invoker(settings: Settings, factory: FakePoolFactory) -> ProcedureInvoker:
    return ProcedureInvoker(ConnectionProvisioner(settings, pool_factory=factory))


@pytest.mark.parametrize("value", ["public", "Reports_2024", "_x", "A1"])
def test_sanitize_identifier_accepts_safe_names(value: str) -> None:
    assert sanitize_identifier(value) == value


@pytest.mark.parametrize(
    "value",
    ["DROP TABLE", "x;y", 'a"b', "", "schema.name", "naïve", "a-b", "proc\n", "\nproc"],
)
def test_sanitize_identifier_rejects_everything_else(value: str) -> None:
    with pytest.raises(InvalidInputError, match="Invalid identifier"):
        sanitize_identifier(value)


@pytest.mark.parametrize("count", [0, 1, 3, 12])
def test_call_statement_has_one_placeholder_per_parameter(count: int) -> None:
    statement = build_call_statement("public", "refresh_totals", count)

    assert statement.startswith('CALL "public"."refresh_totals"(')
    for index in range(1, count + 1):
        assert f"${index}" in statement
    assert f"${count + 1}" not in statement
    assert statement.count("$") == count


def test_call_statement_without_parameters() -> None:
    assert build_call_statement("app", "nightly", 0) == 'CALL "app"."nightly"()'


def test_empty_strings_become_null() -> None:
    assert normalize_parameter_values(["", 0, "x", None, False]) == [None, 0, "x", None, False]


def test_derive_columns_unions_keys_in_first_seen_order() -> None:
    rows = [{"b": 1, "a": 2}, {"a": 3, "c": 4}, {}, {"d": 5, "b": 6}]

    assert derive_columns(rows) == ["b", "a", "c", "d"]


def test_execute_request_parses_aliases() -> None:
    request = ExecuteRequest.model_validate({"schema": " app ", "name": "nightly", "parameters": None})

    assert request.schema_name == "app"
    assert request.parameters == []


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "nightly"},
        {"schema": "", "name": "nightly"},
        {"schema": "app", "name": 7},
        {"schema": "app", "name": "nightly", "parameters": "1,2"},
    ],
)
def test_execute_request_rejects_malformed_input(payload: dict[str, Any]) -> None:
    with pytest.raises(ValidationError):
        ExecuteRequest.model_validate(payload)


def test_parameters_request_requires_specific_name() -> None:
    with pytest.raises(ValidationError, match="Invalid specificName"):
        ParametersRequest.model_validate({"schema": "app", "specificName": "  "})


@pytest.mark.anyio
async def test_execute_binds_values_in_order(settings: Settings) -> None:
    rows = [{"total": 3}, {"total": 4, "note": "late"}]
    factory = FakePoolFactory(FakeConnection(fetch_rows=rows))

    result = await _invoker(settings, factory).execute(ALICE, "app", "recalc", [1, "", "x"])

    assert factory.connection.fetch_calls == [('CALL "app"."recalc"($1, $2, $3)', (1, None, "x"))]
    assert result.rows == rows
    assert result.columns == ["total", "note"]
    assert factory.calls[0]["user"] == "alice"
    assert factory.released == 1


@pytest.mark.anyio
@pytest.mark.parametrize("name", ["DROP TABLE", "recalc\n"])
async def test_execute_rejects_identifier_before_connecting(
    settings: Settings, pool_factory: FakePoolFactory, name: str
) -> None:
    with pytest.raises(InvalidInputError):
        await _invoker(settings, pool_factory).execute(ALICE, "app", name, [])

    assert pool_factory.calls == []


@pytest.mark.anyio
async def test_listed_parameters_round_trip_into_call(settings: Settings) -> None:
    parameters = [
        {"position": 1, "name": "p_from", "defaultValue": ""},
        {"position": 2, "name": "param_2", "defaultValue": "10"},
    ]
    factory = FakePoolFactory(FakeConnection(fetch_rows=parameters))
    invoker = _invoker(settings, factory)

    listed = await invoker.list_parameters(ALICE, "app", "recalc_1234")
    await invoker.execute(ALICE, "app", "recalc", [item["defaultValue"] for item in listed])

    parameters_call, execute_call = factory.connection.fetch_calls
    assert parameters_call == (PARAMETERS_SQL, ("recalc_1234", "app"))
    assert execute_call == ('CALL "app"."recalc"($1, $2)', (None, "10"))
    assert factory.released == 2


@pytest.mark.anyio
async def test_list_procedures_returns_rows(settings: Settings) -> None:
    procedures = [{"schema": "app", "name": "recalc", "specificName": "recalc_1234", "remarks": ""}]
    factory = FakePoolFactory(FakeConnection(fetch_rows=procedures))

    result = await _invoker(settings, factory).list_procedures(ALICE)

    assert result == procedures
    assert "routine_type = 'PROCEDURE'" in factory.connection.fetch_calls[0][0]


@pytest.mark.anyio
async def test_database_errors_are_translated_and_release(settings: Settings) -> None:
    factory = FakePoolFactory(FakeConnection(fetch_error=RuntimeError("procedure app.recalc does not exist")))

    with pytest.raises(ProcedureExecutionError, match="does not exist"):
        await _invoker(settings, factory).execute(ALICE, "app", "recalc")

    assert factory.released == 1
