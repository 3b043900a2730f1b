"""Job configuration schemas, one per job type.

Configurations are stored as JSON on the schedule. Keys may be snake_case
or PascalCase (``ExecutablePath``), which is what configurations imported
from the previous platform use.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_pascal


class JobConfigModel(BaseModel):
    """Base for job configurations: accepts both key styles, ignores extras."""

    model_config = ConfigDict(
        alias_generator=to_pascal,
        populate_by_name=True,
        extra="ignore",
    )

    timeout_seconds: int | None = Field(default=None, gt=0)


class ProcessJobConfig(JobConfigModel):
    """Launch an executable or script."""

    executable_path: str = Field(min_length=1)
    arguments: list[str] | str | None = None
    working_directory: str | None = None
    environment_variables: dict[str, str] = Field(default_factory=dict)


class ProcedureParameter(JobConfigModel):
    """One stored procedure argument, bound by its declared type."""

    name: str = Field(min_length=1)
    type: str = "string"
    value: Any = None


class StoredProcedureJobConfig(JobConfigModel):
    """Call a stored procedure on a configured database."""

    connection_string: str = Field(min_length=1)
    procedure_name: str = Field(min_length=1)
    parameters: list[ProcedureParameter] = Field(default_factory=list)
    execution_mode: Literal["NonQuery", "Scalar"] = "NonQuery"
    return_value_is_error: bool = False


class AuthType(str, Enum):
    NONE = "None"
    BEARER = "Bearer"
    BASIC = "Basic"
    API_KEY = "ApiKey"


class ApiCallJobConfig(JobConfigModel):
    """Send an HTTP request; any 2xx response is success."""

    url: str = Field(min_length=1)
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    request_body: Any = None
    content_type: str = "application/json"

    auth_type: AuthType = AuthType.NONE
    auth_token: str | None = None
    username: str | None = None
    password: str | None = None
    api_key: str | None = None
    api_key_header: str = "X-API-Key"
