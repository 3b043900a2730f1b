"""Job parameter resolution and placeholder substitution."""

import re
from collections.abc import Iterable
from typing import Any

from scheduler_platform.core.errors import ParameterResolutionFailed
from scheduler_platform.core.logging import get_logger
from scheduler_platform.jobs.sql import is_valid_routine_name
from scheduler_platform.models.schedule import JobParameter
from scheduler_platform.services.data_source import AuxiliaryDataSource

logger = get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")


async def resolve_parameters(
    parameters: Iterable[JobParameter],
    data_source: AuxiliaryDataSource,
    default_connection_string: str | None = None,
) -> dict[str, str]:
    """
    Resolve a schedule's parameters to a name -> value mapping.

    Parameters are processed in display order. Static parameters use their
    configured value; dynamic ones run their source routine on the
    auxiliary data source and take the scalar result.

    Args:
        parameters: The schedule's JobParameter rows
        data_source: Auxiliary data source used for dynamic lookups
        default_connection_string: Used when a dynamic parameter has none

    Returns:
        Mapping of parameter name to string value

    Raises:
        ParameterResolutionFailed: Any dynamic lookup failed; nothing is
            returned in that case
    """
    resolved: dict[str, str] = {}

    for param in sorted(parameters, key=lambda p: (p.display_order, p.id or 0)):
        if not param.is_dynamic:
            resolved[param.parameter_name] = param.parameter_value or ""
            continue

        query = (param.source_query or "").strip()
        if not is_valid_routine_name(query):
            raise ParameterResolutionFailed(
                param.parameter_name,
                "source query must be a routine name ([schema.]name)",
            )

        connection_string = param.source_connection_string or default_connection_string
        if not connection_string:
            raise ParameterResolutionFailed(param.parameter_name, "no source connection string")

        try:
            value = await data_source.fetch_scalar(connection_string, query)
        except Exception as e:
            logger.bind(parameter=param.parameter_name, error=str(e)).warning(
                "dynamic_parameter_lookup_failed"
            )
            raise ParameterResolutionFailed(param.parameter_name, str(e)) from e

        resolved[param.parameter_name] = "" if value is None else str(value)

    return resolved


def substitute_placeholders(value: Any, parameters: dict[str, str]) -> Any:
    """Replace ``{Name}`` placeholders in strings, recursing into dicts and lists.

    Placeholders with no matching parameter are left as they are.
    """
    if not parameters:
        return value
    if isinstance(value, str):
        return PLACEHOLDER_PATTERN.sub(
            lambda m: parameters.get(m.group(1), m.group(0)),
            value,
        )
    if isinstance(value, dict):
        return {k: substitute_placeholders(v, parameters) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_placeholders(v, parameters) for v in value]
    return value
