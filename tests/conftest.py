"""Shared test fixtures."""

import copy

import pytest

from wgc.ir.policy import ComposerPolicy
from wgc.ir.spec_schema import WorkflowGraph

CHECK = "systemctl is-active tomcat"
REMEDIATE = "sudo systemctl restart tomcat"


SERVICE_WORKFLOW = {
    "triggers": [{"startStepNames": ["List_EC2_Instances"], "monitorTrigger": {}}],
    "steps": [
        {
            "name": "List_EC2_Instances",
            "actionId": "com.datadoghq.aws.ec2.describeEc2Instances",
            "connectionLabel": "INTEGRATION_AWS",
            "parameters": [{"name": "region", "value": "us-east-1"}],
            "outboundEdges": [
                {"nextStepName": "Generate_Detailed_Message", "branchName": "main"}
            ],
            "display": {"bounds": {"x": 0, "y": 0}},
        },
        {
            "name": "Generate_Detailed_Message",
            "actionId": "com.datadoghq.datatransformation.func",
            "parameters": [
                {
                    "name": "script",
                    "value": "return $.Steps.List_EC2_Instances.data.instances.map(i => i.id);",
                }
            ],
            "outboundEdges": [{"nextStepName": "Restart_Service", "branchName": "main"}],
        },
        {
            "name": "Restart_Service",
            "actionId": "com.datadoghq.aws.system_manager.sendCommand",
            "connectionLabel": "INTEGRATION_AWS",
            "parameters": [
                {"name": "region", "value": "us-east-1"},
                {"name": "documentName", "value": "AWS-RunShellScript"},
                {"name": "instanceIds", "value": ["{{ Steps.Generate_Detailed_Message.data }}"]},
                {"name": "parameters", "value": {"commands": [REMEDIATE]}},
            ],
            "outboundEdges": [{"nextStepName": "Get_Command_Invocation", "branchName": "main"}],
        },
        {
            "name": "Get_Command_Invocation",
            "actionId": "com.datadoghq.aws.system_manager.getCommand",
            "connectionLabel": "INTEGRATION_AWS",
            "parameters": [
                {"name": "region", "value": "us-east-1"},
                {"name": "commandId", "value": "{{ Steps.Restart_Service.command.CommandId }}"},
            ],
            "outboundEdges": [{"nextStepName": "Message_Status", "branchName": "main"}],
        },
        {
            "name": "Message_Status",
            "actionId": "com.datadoghq.msteams.sendSimpleMessage",
            "parameters": [
                {"name": "channelOrUser", "value": {"channelId": "ops", "option": "channel"}},
                {
                    "name": "message",
                    "value": "Status: {{ Steps.Get_Command_Invocation.data.StandardOutputContent }}",
                },
            ],
        },
    ],
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Keep environment defaults out of policies and files out of the repo."""
    for name in (
        "WGC_REGION",
        "AWS_REGION",
        "WGC_CONNECTION_LABEL",
        "WGC_TEAMS_CHANNEL_ID",
        "WGC_TEAMS_TEAM_ID",
        "WGC_TEAMS_TENANT_ID",
        "WGC_LOG_LEVEL",
        "WGC_ERROR_EMAIL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("WGC_ROOT", str(tmp_path / ".wgc"))


@pytest.fixture
def workflow_payload() -> dict:
    return copy.deepcopy(SERVICE_WORKFLOW)


@pytest.fixture
def service_graph(workflow_payload) -> WorkflowGraph:
    return WorkflowGraph.from_payload(workflow_payload)


@pytest.fixture
def envelope(workflow_payload) -> dict:
    """The workflow as the platform returns it."""
    return {
        "data": {
            "id": "wf-123",
            "type": "workflows",
            "attributes": {"name": "MVP - Automation", "spec": workflow_payload},
        }
    }


@pytest.fixture
def policy() -> ComposerPolicy:
    return ComposerPolicy(
        anchor_step_name="Restart_Service",
        health_check_command=CHECK,
        remediation_command=REMEDIATE,
        max_retries=3,
        service_label="Tomcat",
    )


@pytest.fixture
def cyclic_policy(policy) -> ComposerPolicy:
    return ComposerPolicy.model_validate({**policy.model_dump(), "loop_strategy": "cyclic"})
