"""
Caller-supplied composition policy and the retry state it produces at runtime.
"""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from wgc import settings


class CamelModel(BaseModel):
    """Strict model that accepts both camelCase (wire) and snake_case keys."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)


class LoopStrategy(str, Enum):
    UNROLLED = "unrolled"
    CYCLIC = "cyclic"


class NotificationTarget(CamelModel):
    channel_id: str = ""
    option: Literal["channel", "user"] = "channel"
    team_id: Optional[str] = None
    tenant_id: Optional[str] = None

    def channel_or_user(self) -> Dict[str, Any]:
        return {"channelId": self.channel_id, "option": self.option}


class ComposerPolicy(CamelModel):
    anchor_step_name: str = Field(min_length=1)
    health_check_command: str = Field(min_length=1)
    remediation_command: str = Field(min_length=1)
    max_retries: int = Field(default=3, ge=0, le=10)
    loop_strategy: LoopStrategy = LoopStrategy.UNROLLED
    healthy_marker: str = Field(default="active", min_length=1)
    settle_seconds: int = Field(default=5, ge=0)
    target_step_name: Optional[str] = None
    step_prefix: str = Field(default="", pattern=r"^[A-Za-z0-9_]*$")
    region: str = Field(default_factory=settings.default_region)
    connection_label: Optional[str] = Field(default_factory=settings.default_connection_label)
    notification: NotificationTarget = Field(
        default_factory=lambda: NotificationTarget(**settings.default_notification())
    )
    service_label: str = "service"
    obsolete_steps: List[str] = Field(default_factory=list)
    workflow_name: str = "workflow"

    @property
    def chain_id(self) -> str:
        return f"{self.step_prefix}{self.anchor_step_name}"

    def fingerprint(self) -> str:
        """Stable hash of every field that shapes the generated chain."""

        payload = self.model_dump(mode="json", exclude={"obsolete_steps", "workflow_name"})
        canonical = json.dumps(payload, sort_keys=True)
        return hashlib.sha256(canonical.encode()).hexdigest()[:16]


class ErrorWiring(str, Enum):
    ON_FAILURE = "on_failure"
    ERROR_BRANCH = "error_branch"


class ErrorHandlingPolicy(CamelModel):
    """Failure notifications for steps whose errors must reach an operator."""

    critical_steps: List[str] = Field(min_length=1)
    wiring: ErrorWiring = ErrorWiring.ON_FAILURE
    email_to: Optional[str] = Field(default_factory=settings.default_error_email)
    notification: NotificationTarget = Field(
        default_factory=lambda: NotificationTarget(**settings.default_notification())
    )
    workflow_label: str = "workflow"
    workflow_name: str = "workflow"

    @property
    def chain_id(self) -> str:
        return "Error_Handling"

    def fingerprint(self) -> str:
        payload = self.model_dump(mode="json", exclude={"workflow_name"})
        canonical = json.dumps(payload, sort_keys=True)
        return hashlib.sha256(canonical.encode()).hexdigest()[:16]


class RetryState(CamelModel):
    """Output of a Decide step, read by edge conditions and message templates."""

    success: bool
    health_status: Literal["active", "inactive"]
    retry_count: int = Field(ge=0)
    max_retries: int = Field(ge=0)
    should_retry: bool
    message: str

    @model_validator(mode="after")
    def _check_consistency(self) -> "RetryState":
        if self.success and self.should_retry:
            raise ValueError("A successful check never schedules a retry.")
        if self.retry_count > self.max_retries:
            raise ValueError("retry_count cannot exceed max_retries.")
        return self

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
