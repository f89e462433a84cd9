"""
Typed platform actions and their parameter schemas.

Generated steps are only ever built through ``build_step`` so a malformed
parameter set fails here, at construction, instead of at the remote platform.
Steps whose action id is not listed in ``ActionKind`` stay opaque.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Type, Union

from pydantic import Field, ValidationError

from wgc.ir.spec_schema import Edge, Parameter, Step, StrictModel


class ActionKind(str, Enum):
    SEND_COMMAND = "com.datadoghq.aws.system_manager.sendCommand"
    GET_COMMAND = "com.datadoghq.aws.system_manager.getCommand"
    FUNCTION = "com.datadoghq.datatransformation.func"
    TEAMS_MESSAGE = "com.datadoghq.msteams.sendSimpleMessage"
    EMAIL = "com.datadoghq.email.send"

    @classmethod
    def from_action_id(cls, action_id: str) -> Optional["ActionKind"]:
        for kind in cls:
            if kind.value == action_id:
                return kind
        return None


class CommandList(StrictModel):
    commands: List[str] = Field(min_length=1)


class SendCommandParams(StrictModel):
    region: str = Field(min_length=1)
    document_name: str = Field(default="AWS-RunShellScript", alias="documentName")
    instance_ids: Union[List[str], str] = Field(alias="instanceIds")
    parameters: CommandList


class GetCommandParams(StrictModel):
    region: str = Field(min_length=1)
    command_id: str = Field(alias="commandId", min_length=1)


class FunctionParams(StrictModel):
    description: Optional[str] = None
    script: str = Field(min_length=1)


class TeamsMessageParams(StrictModel):
    channel_or_user: Dict[str, Any] = Field(alias="channelOrUser")
    message: str = Field(min_length=1)
    team_id: Optional[str] = Field(default=None, alias="teamId")
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")


class EmailParams(StrictModel):
    subject: str
    to: str
    message: str


PARAMETER_SCHEMAS: Dict[ActionKind, Type[StrictModel]] = {
    ActionKind.SEND_COMMAND: SendCommandParams,
    ActionKind.GET_COMMAND: GetCommandParams,
    ActionKind.FUNCTION: FunctionParams,
    ActionKind.TEAMS_MESSAGE: TeamsMessageParams,
    ActionKind.EMAIL: EmailParams,
}


def build_step(
    name: str,
    kind: ActionKind,
    params: StrictModel,
    *,
    edges: Optional[Sequence[Edge]] = None,
    connection_label: Optional[str] = None,
) -> Step:
    schema = PARAMETER_SCHEMAS[kind]
    if not isinstance(params, schema):
        raise TypeError(
            f"Step '{name}' of kind {kind.name} expects {schema.__name__}, "
            f"got {type(params).__name__}."
        )
    values = params.model_dump(by_alias=True, exclude_none=True)
    payload: Dict[str, Any] = {
        "name": name,
        "actionId": kind.value,
        "parameters": [Parameter(name=key, value=value) for key, value in values.items()],
        "outboundEdges": list(edges or []),
    }
    if connection_label:
        payload["connectionLabel"] = connection_label
    return Step.model_validate(payload)


def validate_step_parameters(step: Step) -> List[str]:
    """Check a step's parameters against its action schema.

    Extra parameters are ignored; the platform accepts more options than the
    composer emits. Returns human-readable problems, empty when the step is
    well formed or its action is opaque.
    """

    kind = ActionKind.from_action_id(step.action_id)
    if kind is None:
        return []
    schema = PARAMETER_SCHEMAS[kind]
    known = {field.alias or field_name for field_name, field in schema.model_fields.items()}
    values = {key: value for key, value in step.parameter_map().items() if key in known}
    try:
        schema.model_validate(values)
    except ValidationError as exc:
        return [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
    return []
