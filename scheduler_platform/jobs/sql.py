"""Helpers for calling database routines by name.

Routine names are the only SQL text accepted from configuration. Names are
validated against an allow-list pattern and statements are built per
dialect with bound parameters.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import TextClause, text

from scheduler_platform.core.errors import ScheduleConfigurationError

# name, schema.name, [schema].[name]
ROUTINE_NAME_PATTERN = re.compile(
    r"^(\[[A-Za-z_]\w*\]|[A-Za-z_]\w*)(\.(\[[A-Za-z_]\w*\]|[A-Za-z_]\w*))?$"
)
PARAMETER_NAME_PATTERN = re.compile(r"^@?[A-Za-z_]\w*$")

_INT_TYPES = {"int", "integer", "bigint", "smallint", "tinyint", "long"}
_DECIMAL_TYPES = {"decimal", "numeric", "money"}
_FLOAT_TYPES = {"float", "real", "double"}
_BOOL_TYPES = {"bool", "boolean", "bit"}
_TRUE_VALUES = {"1", "true", "yes", "y"}


def is_valid_routine_name(name: str | None) -> bool:
    return bool(name) and ROUTINE_NAME_PATTERN.match(name.strip()) is not None


def validate_routine_name(name: str) -> str:
    """Return the trimmed routine name or raise ScheduleConfigurationError."""
    if not is_valid_routine_name(name):
        raise ScheduleConfigurationError(
            f"'{name}' is not a valid routine name; only [schema.]name is accepted"
        )
    return name.strip()


def _clean_parameter_name(name: str) -> str:
    if not PARAMETER_NAME_PATTERN.match(name):
        raise ScheduleConfigurationError(f"Invalid procedure parameter name '{name}'")
    return name.lstrip("@")


def bind_value(declared_type: str | None, value: Any) -> Any:
    """Convert a configured value to the Python type its declared SQL type expects."""
    if value is None:
        return None
    kind = (declared_type or "string").strip().lower()
    try:
        if kind in _INT_TYPES:
            return int(value)
        if kind in _DECIMAL_TYPES:
            return Decimal(str(value))
        if kind in _FLOAT_TYPES:
            return float(value)
        if kind in _BOOL_TYPES:
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() in _TRUE_VALUES
        if kind == "datetime":
            return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
        if kind == "date":
            if isinstance(value, datetime):
                return value.date()
            return value if isinstance(value, date) else date.fromisoformat(str(value))
    except (ValueError, TypeError, InvalidOperation) as e:
        raise ScheduleConfigurationError(
            f"Value {value!r} cannot be bound as {declared_type}: {e}"
        ) from e
    return str(value)


def build_routine_call(
    dialect: str,
    routine_name: str,
    parameter_names: list[str],
    mode: str = "NonQuery",
) -> TextClause:
    """Build a dialect-specific routine invocation.

    Args:
        dialect: SQLAlchemy dialect name (``mssql``, ``postgresql``, ...)
        routine_name: Validated routine name
        parameter_names: Bound parameter names, in call order
        mode: ``NonQuery``, ``Scalar`` or ``Rows``
    """
    name = validate_routine_name(routine_name)
    names = [_clean_parameter_name(p) for p in parameter_names]

    if dialect == "mssql":
        args = ", ".join(f"@{n}=:{n}" for n in names)
        return text(f"EXEC {name} {args}".rstrip())

    name = name.replace("[", "").replace("]", "")
    args = ", ".join(f":{n}" for n in names)
    if mode == "Rows":
        return text(f"SELECT * FROM {name}({args})")
    if mode == "Scalar":
        return text(f"SELECT {name}({args})")
    return text(f"CALL {name}({args})")
