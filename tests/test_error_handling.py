"""Tests for failure-notification handlers on critical steps."""

import pytest

from wgc import WorkflowComposer
from wgc.compiler.error_handling import (
    ErrorHandlingGenerator,
    error_condition,
    infer_error_manifest,
)
from wgc.compiler.graph_merger import GraphMerger
from wgc.ir.actions import ActionKind
from wgc.ir.errors import CompositionError, MissingDependency
from wgc.ir.manifest import ManifestStore
from wgc.ir.policy import ErrorHandlingPolicy, ErrorWiring
from wgc.ir.spec_schema import Step
from wgc.ir.validators import InvariantValidator, error_handling_coverage

CRITICAL = ["List_EC2_Instances", "Restart_Service", "Get_Command_Invocation"]


@pytest.fixture
def error_policy() -> ErrorHandlingPolicy:
    return ErrorHandlingPolicy(
        critical_steps=CRITICAL,
        email_to="ops@example.com",
        workflow_label="MVP - Automation",
    )


@pytest.fixture
def generator() -> ErrorHandlingGenerator:
    return ErrorHandlingGenerator()


def attach(graph, policy, previous=None):
    handlers = ErrorHandlingGenerator().generate(graph, policy)
    return handlers, GraphMerger().attach_error_handlers(graph, handlers, previous)


class TestGenerate:
    def test_step_pair_per_critical_step(self, generator, service_graph, error_policy):
        handlers = generator.generate(service_graph, error_policy)
        assert handlers.step_names() == [
            "Error_Notification_List_EC2_Instances",
            "Error_Email_List_EC2_Instances",
            "Error_Notification_Restart_Service",
            "Error_Email_Restart_Service",
            "Error_Notification_Get_Command_Invocation",
            "Error_Email_Get_Command_Invocation",
        ]
        assert handlers.handlers["Restart_Service"] == "Error_Notification_Restart_Service"
        assert handlers.manifest.kind == "error_handling"
        assert handlers.manifest.covered_steps == CRITICAL

    def test_notification_then_email(self, generator, service_graph, error_policy):
        handlers = generator.generate(service_graph, error_policy)
        steps = {step.name: step for step in handlers.steps}

        notification = steps["Error_Notification_Restart_Service"]
        assert notification.action_id == ActionKind.TEAMS_MESSAGE.value
        assert "{{ Steps.Restart_Service.error }}" in notification.parameter("message")
        assert notification.main_edge().next_step_name == "Error_Email_Restart_Service"

        email = steps["Error_Email_Restart_Service"]
        assert email.action_id == ActionKind.EMAIL.value
        assert email.parameter("to") == "ops@example.com"
        assert "Restart_Service" in email.parameter("subject")
        assert "- Error: {{ Steps.Restart_Service.error }}" in email.parameter("message")
        assert "{{ Workflow.startedAt }}" in email.parameter("message")
        assert email.is_terminal()

    def test_staggered_positions(self, generator, service_graph, error_policy):
        steps = {step.name: step for step in generator.generate(service_graph, error_policy).steps}
        assert steps["Error_Notification_List_EC2_Instances"].bounds() == (-400, 600)
        assert steps["Error_Email_List_EC2_Instances"].bounds() == (-400, 700)
        assert steps["Error_Notification_Restart_Service"].bounds() == (-300, 800)
        assert steps["Error_Email_Restart_Service"].bounds() == (-300, 900)

    def test_without_email(self, generator, service_graph, error_policy):
        handlers = generator.generate(
            service_graph, error_policy.model_copy(update={"email_to": None})
        )
        assert handlers.step_names() == [
            "Error_Notification_List_EC2_Instances",
            "Error_Notification_Restart_Service",
            "Error_Notification_Get_Command_Invocation",
        ]
        assert all(step.is_terminal() for step in handlers.steps)

    def test_email_from_environment(self, monkeypatch):
        monkeypatch.setenv("WGC_ERROR_EMAIL", "oncall@example.com")
        assert ErrorHandlingPolicy(critical_steps=["A"]).email_to == "oncall@example.com"
        assert ErrorHandlingPolicy(critical_steps=["A"], email_to=None).email_to is None

    def test_missing_critical_step(self, generator, service_graph, error_policy):
        with pytest.raises(MissingDependency) as info:
            generator.generate(
                service_graph, error_policy.model_copy(update={"critical_steps": ["Nope"]})
            )
        assert info.value.step_name == "Nope"

    def test_handler_cannot_be_critical(self, generator, service_graph, error_policy):
        service_graph.upsert(
            Step(name="Error_Notification_Old", action_id=ActionKind.TEAMS_MESSAGE.value)
        )
        with pytest.raises(CompositionError, match="Error_Notification_Old"):
            generator.generate(
                service_graph,
                error_policy.model_copy(update={"critical_steps": ["Error_Notification_Old"]}),
            )

    def test_policy_needs_a_critical_step(self):
        with pytest.raises(ValueError):
            ErrorHandlingPolicy(critical_steps=[])


class TestAttach:
    def test_on_failure_wiring(self, service_graph, error_policy):
        _, result = attach(service_graph, error_policy)
        graph = result.graph
        assert graph.get("Restart_Service").on_failure_step() == "Error_Notification_Restart_Service"
        assert graph.get("Restart_Service").targets() == ["Get_Command_Invocation"]
        assert error_handling_coverage(graph, CRITICAL).complete

        report = InvariantValidator().validate(graph)
        assert report.ok
        assert report.warnings == []

    def test_error_branch_wiring(self, service_graph, error_policy):
        branch_policy = error_policy.model_copy(update={"wiring": ErrorWiring.ERROR_BRANCH})
        _, result = attach(service_graph, branch_policy)
        step = result.graph.get("Restart_Service")
        assert step.on_failure_step() is None
        assert [(edge.next_step_name, edge.branch_name) for edge in step.outbound_edges] == [
            ("Get_Command_Invocation", "main"),
            ("Error_Notification_Restart_Service", "error"),
        ]
        assert step.outbound_edges[1].condition == '{{ Steps.Restart_Service.status }} === "error"'
        assert error_handling_coverage(result.graph, CRITICAL).complete

        report = InvariantValidator().validate(result.graph)
        assert report.ok
        assert report.warnings == []

    def test_error_condition(self):
        assert error_condition("Restart_Service") == (
            '{{ Steps.Restart_Service.status }} === "error"'
        )

    def test_input_graph_untouched(self, service_graph, error_policy):
        before = service_graph.to_payload()
        attach(service_graph, error_policy)
        assert service_graph.to_payload() == before

    def test_reattach_replaces_by_name(self, service_graph, error_policy):
        handlers, first = attach(service_graph, error_policy)
        _, second = attach(first.graph, error_policy, previous=handlers.manifest)
        assert second.added == []
        assert second.removed == []
        assert second.replaced == handlers.step_names()
        assert second.graph.to_payload() == first.graph.to_payload()

    def test_hand_made_handler_replaced(self, service_graph, error_policy):
        service_graph.upsert(
            Step(name="Error_Notification_Restart_Service", action_id="com.datadoghq.core.noop")
        )
        _, result = attach(service_graph, error_policy)
        assert "Error_Notification_Restart_Service" in result.replaced
        assert result.graph.get("Error_Notification_Restart_Service").action_id == (
            ActionKind.TEAMS_MESSAGE.value
        )

    def test_switch_wiring(self, service_graph, error_policy):
        handlers, first = attach(service_graph, error_policy)
        _, second = attach(
            first.graph,
            error_policy.model_copy(update={"wiring": ErrorWiring.ERROR_BRANCH}),
            previous=handlers.manifest,
        )
        step = second.graph.get("Restart_Service")
        assert step.on_failure_step() is None
        assert "Error_Notification_Restart_Service" in step.targets()
        assert len(step.outbound_edges) == 2

    def test_dropped_critical_step_is_unwired(self, service_graph, error_policy):
        handlers, first = attach(service_graph, error_policy)
        _, second = attach(
            first.graph,
            error_policy.model_copy(update={"critical_steps": ["Restart_Service"]}),
            previous=handlers.manifest,
        )
        assert second.removed == [
            "Error_Notification_List_EC2_Instances",
            "Error_Email_List_EC2_Instances",
            "Error_Notification_Get_Command_Invocation",
            "Error_Email_Get_Command_Invocation",
        ]
        assert [edge.model_dump() for edge in second.pruned_edges] == [
            {
                "source": "List_EC2_Instances",
                "target": "Error_Notification_List_EC2_Instances",
                "branch_name": "onFailure",
            },
            {
                "source": "Get_Command_Invocation",
                "target": "Error_Notification_Get_Command_Invocation",
                "branch_name": "onFailure",
            },
        ]
        assert second.graph.get("List_EC2_Instances").on_failure_step() is None
        assert error_handling_coverage(second.graph, ["Restart_Service"]).complete
        assert InvariantValidator().validate(second.graph).ok

    def test_dropped_email_removed(self, service_graph, error_policy):
        handlers, first = attach(service_graph, error_policy)
        _, second = attach(
            first.graph,
            error_policy.model_copy(update={"email_to": None}),
            previous=handlers.manifest,
        )
        assert set(second.removed) == {
            "Error_Email_List_EC2_Instances",
            "Error_Email_Restart_Service",
            "Error_Email_Get_Command_Invocation",
        }
        assert second.graph.get("Error_Notification_Restart_Service").is_terminal()
        assert InvariantValidator().validate(second.graph).ok

    def test_inferred_manifest(self, service_graph, error_policy):
        handlers, result = attach(service_graph, error_policy)
        inferred = infer_error_manifest(result.graph, handlers.chain_id)
        assert inferred.step_names == handlers.step_names()
        assert inferred.covered_steps == CRITICAL
        assert inferred.version == "0.0.0"
        assert infer_error_manifest(service_graph, handlers.chain_id) is None


class TestComposeWithErrorHandling:
    def test_chain_and_handlers(self, service_graph, policy, error_policy):
        critical = CRITICAL + ["Decide_0"]
        artifact = WorkflowComposer().compose(
            service_graph,
            policy,
            error_handling=error_policy.model_copy(update={"critical_steps": critical}),
        )
        graph = artifact.workflow_graph()
        assert artifact.trace == ["generate_chains", "merge_chains", "error_handling", "validate"]
        assert error_handling_coverage(graph, critical).complete
        assert graph.get("Restart_Service").main_edge().next_step_name == "IssueCommand_0"
        assert [item.kind for item in artifact.manifests] == ["retry_chain", "error_handling"]
        assert "Error_Email_Decide_0" in artifact.added
        assert {item.code for item in artifact.warnings} == {"orphan_step"}

    def test_recomposition_is_idempotent(self, service_graph, policy, error_policy):
        composer = WorkflowComposer()
        first = composer.compose(service_graph, policy, error_handling=error_policy)
        second = composer.compose(first.workflow_graph(), policy, error_handling=error_policy)
        assert second.graph == first.graph
        assert second.added == []
        assert second.removed == []

    def test_handlers_only(self, service_graph):
        artifact = WorkflowComposer().compose(
            service_graph,
            [],
            error_handling={"criticalSteps": ["Restart_Service"], "emailTo": "ops@example.com"},
        )
        assert artifact.trace == ["error_handling", "validate"]
        assert artifact.added == [
            "Error_Notification_Restart_Service",
            "Error_Email_Restart_Service",
        ]
        assert artifact.warnings == []

    def test_nothing_to_compose(self, service_graph):
        with pytest.raises(CompositionError, match="At least one"):
            WorkflowComposer().compose(service_graph, [])

    def test_manifest_versions(self, tmp_path, service_graph, policy, error_policy):
        composer = WorkflowComposer(manifest_store=ManifestStore(str(tmp_path)))
        first = composer.compose(service_graph, policy, error_handling=error_policy)
        assert [item.version for item in first.manifests] == ["1.0.0", "1.0.0"]

        narrowed = error_policy.model_copy(update={"critical_steps": ["Restart_Service"]})
        second = composer.compose(first.workflow_graph(), policy, error_handling=narrowed)
        assert [item.version for item in second.manifests] == ["1.0.0", "1.0.1"]
        assert set(second.removed) == {
            "Error_Notification_List_EC2_Instances",
            "Error_Email_List_EC2_Instances",
            "Error_Notification_Get_Command_Invocation",
            "Error_Email_Get_Command_Invocation",
        }
