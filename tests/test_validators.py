"""Tests for structural validation of workflow graphs."""

import pytest

from wgc.compiler.graph_merger import GraphMerger
from wgc.compiler.retry_generator import RetrySubgraphGenerator
from wgc.ir.errors import MissingDependency
from wgc.ir.spec_schema import Edge, Step, WorkflowGraph
from wgc.ir.validators import (
    InvariantValidator,
    entry_step_names,
    error_handling_coverage,
)


def compose(graph, policy):
    chain = RetrySubgraphGenerator().generate(graph, policy)
    return GraphMerger().merge(graph, chain).graph


def add_edge(graph, source, target, branch="main", condition=None):
    step = graph.get(source)
    edge = Edge(next_step_name=target, branch_name=branch, condition=condition)
    graph.upsert(step.with_edges(step.outbound_edges + [edge]))


class TestCleanGraphs:
    def test_original_graph(self, service_graph):
        report = InvariantValidator().validate(service_graph)
        assert report.ok
        assert report.warnings == []
        assert report.max_depth is None

    def test_depth_from_anchor(self, service_graph):
        report = InvariantValidator().validate(service_graph, "List_EC2_Instances")
        assert report.max_depth == 4

    def test_unrolled_chain(self, service_graph, policy):
        report = InvariantValidator().validate(compose(service_graph, policy), "Restart_Service")
        assert report.ok
        assert report.cycles == []
        assert report.max_depth == 13

    def test_displaced_step_is_orphan_warning(self, service_graph, policy):
        report = InvariantValidator().validate(compose(service_graph, policy), "Restart_Service")
        assert ("orphan_step", "Get_Command_Invocation") in {
            (item.code, item.step) for item in report.warnings
        }

    def test_missing_anchor(self, service_graph):
        with pytest.raises(MissingDependency):
            InvariantValidator().validate(service_graph, "Nope")


class TestViolations:
    def test_duplicate_name(self, service_graph):
        service_graph.steps.append(Step(name="Message_Status", action_id="custom.action"))
        report = InvariantValidator().validate(service_graph)
        assert "duplicate_name" in report.codes()

    def test_dangling_edge(self, service_graph):
        add_edge(
            service_graph,
            "Get_Command_Invocation",
            "Ghost",
            branch="error",
            condition="{{ Steps.Get_Command_Invocation.data.Status }} === 'Failed'",
        )
        report = InvariantValidator().validate(service_graph)
        assert [(item.code, item.step) for item in report.violations] == [
            ("dangling_edge", "Get_Command_Invocation")
        ]

    def test_dangling_on_failure(self, service_graph):
        step = service_graph.get("Restart_Service")
        service_graph.upsert(step.with_on_failure("Error_Notification_Restart_Service"))
        report = InvariantValidator().validate(service_graph)
        assert [(item.code, item.step) for item in report.violations] == [
            ("dangling_edge", "Restart_Service")
        ]

    def test_multiple_producers(self, service_graph):
        add_edge(service_graph, "List_EC2_Instances", "Restart_Service", branch="shortcut",
                 condition="{{ Steps.List_EC2_Instances.data.skip }} === true")
        report = InvariantValidator().validate(service_graph)
        assert [(item.code, item.step) for item in report.violations] == [
            ("multiple_producers", "Restart_Service")
        ]

    def test_unbounded_cycle(self, service_graph):
        add_edge(service_graph, "Message_Status", "Get_Command_Invocation")
        report = InvariantValidator().validate(service_graph)
        assert "unbounded_cycle" in report.codes()
        assert "no_terminal" in report.codes()
        assert report.cycles == [["Get_Command_Invocation", "Message_Status"]]

    def test_no_terminal_checked_from_anchor(self, service_graph):
        add_edge(service_graph, "Message_Status", "Get_Command_Invocation")
        report = InvariantValidator().validate(service_graph, "Get_Command_Invocation")
        no_terminal = {item.step for item in report.violations if item.code == "no_terminal"}
        assert no_terminal == {"Get_Command_Invocation", "Message_Status"}


class TestGuardedCycles:
    def test_cyclic_chain_accepted_with_back_edges(self, service_graph, cyclic_policy):
        graph = compose(service_graph, cyclic_policy)
        report = InvariantValidator(allow_guarded_back_edges=True).validate(graph, "Restart_Service")
        assert report.ok
        assert report.cycles == [["Decide", "FetchResult", "IssueCommand"]]
        assert report.max_depth is None

    def test_cyclic_chain_rejected_without_back_edges(self, service_graph, cyclic_policy):
        graph = compose(service_graph, cyclic_policy)
        report = InvariantValidator().validate(graph, "Restart_Service")
        assert [(item.code, item.step) for item in report.violations] == [
            ("multiple_producers", "IssueCommand")
        ]

    def test_counter_from_outside_cycle_is_no_guard(self, service_graph, policy):
        graph = compose(service_graph, policy)
        add_edge(graph, "Notify_Failure_1", "IssueCommand_1")
        report = InvariantValidator(allow_guarded_back_edges=True).validate(graph)
        assert ("unbounded_cycle", "Decide_1") in {
            (item.code, item.step) for item in report.violations
        }
        assert "multiple_producers" in report.codes()

    @pytest.mark.parametrize(
        "condition",
        [
            None,
            "{{ Steps.Decide.data.success }} === false",
            "{{ Steps.Decide.data.shouldRetry }} === false",
            "{{ Steps.FetchResult.data.shouldRetry }} === true",
        ],
    )
    def test_back_edge_must_be_the_retry_branch(self, service_graph, cyclic_policy, condition):
        graph = compose(service_graph, cyclic_policy)
        decide = graph.get("Decide")
        edges = [
            edge.model_copy(update={"condition": condition})
            if edge.next_step_name == "IssueCommand"
            else edge
            for edge in decide.outbound_edges
        ]
        graph.upsert(decide.with_edges(edges))
        report = InvariantValidator(allow_guarded_back_edges=True).validate(graph, "Restart_Service")
        assert ("unbounded_cycle", "Decide") in {
            (item.code, item.step) for item in report.violations
        }
        assert ("multiple_producers", "IssueCommand") in {
            (item.code, item.step) for item in report.violations
        }

    def test_extra_back_edge_from_guard_rejected(self, service_graph, cyclic_policy):
        graph = compose(service_graph, cyclic_policy)
        add_edge(
            graph,
            "Decide",
            "FetchResult",
            branch="recheck",
            condition="{{ Steps.Decide.data.success }} === false",
        )
        report = InvariantValidator(allow_guarded_back_edges=True).validate(graph, "Restart_Service")
        assert "unbounded_cycle" in report.codes()


class TestLint:
    def test_unresolved_reference(self, service_graph):
        step = service_graph.get("Message_Status")
        step.parameters[1].value = "Status: {{ Steps.Vanished.data }}"
        report = InvariantValidator().validate(service_graph)
        assert report.ok
        assert [(item.code, item.step) for item in report.warnings] == [
            ("unresolved_reference", "Message_Status")
        ]

    def test_invalid_parameters(self, service_graph):
        step = service_graph.get("Get_Command_Invocation")
        step.parameters = [item for item in step.parameters if item.name != "region"]
        report = InvariantValidator().validate(service_graph)
        assert report.warning_codes() == {"invalid_parameters"}

    def test_entry_steps_from_triggers(self, service_graph):
        assert entry_step_names(service_graph) == ["List_EC2_Instances"]


class TestErrorHandlingCoverage:
    def test_coverage(self, service_graph):
        service_graph.upsert(
            Step(
                name="Error_Notification_Restart_Service",
                action_id="com.datadoghq.msteams.sendSimpleMessage",
            )
        )
        add_edge(
            service_graph,
            "Restart_Service",
            "Error_Notification_Restart_Service",
            branch="error",
            condition="{{ Steps.Restart_Service.data.failed }} === true",
        )
        coverage = error_handling_coverage(
            service_graph, ["Restart_Service", "Get_Command_Invocation", "Missing_Step"]
        )
        assert coverage.covered == {"Restart_Service": ["Error_Notification_Restart_Service"]}
        assert coverage.uncovered == ["Get_Command_Invocation"]
        assert coverage.missing == ["Missing_Step"]
        assert coverage.notification_steps == ["Error_Notification_Restart_Service"]
        assert not coverage.complete

    def test_on_failure_handler(self, workflow_payload):
        workflow_payload["steps"][0]["onFailure"] = {"stepName": "Message_Status"}
        graph = WorkflowGraph.from_payload(workflow_payload)
        coverage = error_handling_coverage(graph, ["List_EC2_Instances"])
        assert coverage.covered == {"List_EC2_Instances": ["Message_Status"]}
        assert coverage.complete
