"""Tests for tiller.tools.surface."""

import pytest
from pydantic import BaseModel

from tiller.orchestration.blueprint import Blueprint, BlueprintMetadata
from tiller.orchestration.runner import BlueprintRegistry, BlueprintRunner
from tiller.tools.surface import INPUT_VALIDATION_FAILED, UNKNOWN_TOOL, WORKER_NOT_RUNNING, ToolSurface


class EchoInput(BaseModel):
    names: list[str]
    fail: str | None = None


class EchoOutput(BaseModel):
    echoed: list[str]


class Echo(Blueprint):
    metadata = BlueprintMetadata(id="blueprints.test.echo", description="Echo names through test.step")
    input_model = EchoInput
    output_model = EchoOutput

    def logic(self, saga, input):
        outputs = [saga.execute_by_id("test.step", {"name": n, "fail": n == input.fail}) for n in input.names]
        return {"echoed": [o.name for o in outputs]}


@pytest.fixture
def runner(step_registry, substrate, runtime, settings):
    blueprints = BlueprintRegistry()
    blueprints.register(Echo)
    runner = BlueprintRunner(step_registry, blueprints, substrate=substrate, runtime=runtime, settings=settings)
    yield runner
    runner.shutdown()


@pytest.fixture
def surface(step_registry, runner):
    return ToolSurface(step_registry, runner, run_timeout=5)


class TestListTools:
    def test_lists_capabilities_and_blueprints(self, surface):
        tools = {t["name"]: t for t in surface.list_tools()}
        assert tools["test.step"]["kind"] == "capability"
        assert tools["test.step"]["inputSchema"]["required"] == ["name"]
        assert tools["blueprints.test.echo"]["kind"] == "blueprint"
        assert tools["blueprints.test.echo"]["description"] == "Echo names through test.step"

    def test_capabilities_only_without_runner(self, step_registry):
        tools = ToolSurface(step_registry).list_tools()
        assert [t["name"] for t in tools] == ["test.step"]


class TestCallCapability:
    def test_success(self, surface, context):
        response = surface.call_tool("test.step", {"name": "a"}, context)
        assert response == {"result": {"name": "a", "attempt": 1}, "trace_id": "trace-1"}

    def test_invalid_arguments_never_reach_handler(self, surface, context, step_handler):
        response = surface.call_tool("test.step", {"fail": True}, context)
        assert response["error"] == INPUT_VALIDATION_FAILED
        assert response["trace_id"] == "trace-1"
        assert [e["field"] for e in response["details"]] == ["name"]
        assert step_handler.calls == []

    def test_failure_carries_kind(self, surface, context):
        response = surface.call_tool("test.step", {"name": "a", "fail": True}, context)
        assert response["error"] == "FATAL"
        assert response["details"]["retryable"] is False
        assert response["details"]["message"] == "step a failed"

    def test_unknown_tool(self, surface, context):
        response = surface.call_tool("nope.tool", {}, context)
        assert response == {"error": UNKNOWN_TOOL, "trace_id": "trace-1", "details": {"tool": "nope.tool"}}

    def test_generates_trace_id(self, surface):
        response = surface.call_tool("test.step", {"name": "a"})
        assert response["trace_id"]


class TestCallBlueprint:
    def test_success_reports_run_id(self, surface, context, runner):
        response = surface.call_tool("blueprints.test.echo", {"names": ["a", "b"]}, context)
        assert response["result"] == {"echoed": ["a", "b"]}
        assert response["trace_id"] == "trace-1"
        run_id = response["meta"]["run_id"]
        assert runner.get_run(run_id).status == "COMPLETED"

    def test_failure_surfaces_capability_kind(self, surface, context):
        response = surface.call_tool("blueprints.test.echo", {"names": ["a"], "fail": "a"}, context)
        assert response["error"] == "FATAL"
        assert response["details"]["run_id"]
        assert response["details"]["context"]["step"] == "main:1"

    def test_invalid_arguments(self, surface, context, runner):
        response = surface.call_tool("blueprints.test.echo", {"names": 3}, context)
        assert response["error"] == INPUT_VALIDATION_FAILED
        assert response["details"][0]["field"] == "names"
        assert runner.runs() == []

    def test_worker_not_running(self, surface, context, runner):
        runner.shutdown()
        response = surface.call_tool("blueprints.test.echo", {"names": []}, context)
        assert response["error"] == WORKER_NOT_RUNNING
