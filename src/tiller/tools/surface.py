"""
Tool surface - schema-gated call boundary for capabilities and blueprints.

Manifesto:
    External callers (agents, chat ops, the CLI) see capabilities and
    blueprints as *tools*: a name, a description and an input JSON Schema.
    ``call_tool`` validates arguments against that schema before forwarding
    anything, and always answers with a JSON-ready envelope that carries
    the caller's ``trace_id``:

        {"result": ..., "trace_id": ...}
        {"error": <code>, "trace_id": ..., "details": ...}

Error codes:
    ``UNKNOWN_TOOL``             no capability or blueprint with that name
    ``INPUT_VALIDATION_FAILED``  arguments rejected by the input schema
    ``<ErrorKind>``              a capability failed with a classified kind
    ``RUNNER_ERROR``             a blueprint run failed outside the taxonomy
    ``WORKER_NOT_RUNNING``       a blueprint was called with no live runner

Tags:
    tools, schema, boundary, tracing, tiller

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from tiller.capabilities.descriptor import ExecutionContext, validate_model
from tiller.capabilities.registry import CapabilityRegistry
from tiller.core.errors import CapabilityError, ErrorKind, TillerError
from tiller.core.logging import get_logger
from tiller.execution.invoker import CapabilityInvoker
from tiller.orchestration.runner import BlueprintRunner

logger = get_logger(__name__)

UNKNOWN_TOOL = "UNKNOWN_TOOL"
INPUT_VALIDATION_FAILED = "INPUT_VALIDATION_FAILED"
RUNNER_ERROR = ErrorKind.RUNNER_ERROR.value
WORKER_NOT_RUNNING = "WORKER_NOT_RUNNING"


class ToolSurface:
    """Lists and calls capabilities and blueprints by name."""

    def __init__(
        self,
        capabilities: CapabilityRegistry,
        runner: BlueprintRunner | None = None,
        *,
        invoker: CapabilityInvoker | None = None,
        run_timeout: float | None = None,
    ):
        self.capabilities = capabilities
        self.runner = runner
        self.invoker = invoker or CapabilityInvoker(capabilities, runner.runtime if runner else None)
        self.run_timeout = run_timeout

    def list_tools(self) -> list[dict[str, Any]]:
        tools = []
        for descriptor in self.capabilities.descriptors():
            tools.append(
                {
                    "name": descriptor.id,
                    "kind": "capability",
                    "version": descriptor.version,
                    "description": descriptor.description,
                    "inputSchema": descriptor.schemas.input.model_json_schema(by_alias=True),
                }
            )
        if self.runner is not None:
            for blueprint in self.runner.blueprints.list():
                tools.append(
                    {
                        "name": blueprint.metadata.id,
                        "kind": "blueprint",
                        "version": blueprint.metadata.version,
                        "description": blueprint.metadata.description,
                        "inputSchema": blueprint.input_model.model_json_schema(by_alias=True),
                    }
                )
        return tools

    def call_tool(
        self,
        name: str,
        arguments: Mapping[str, Any] | None,
        context: ExecutionContext | None = None,
    ) -> dict[str, Any]:
        context = context or ExecutionContext(app_id="tool-surface", trace_id=uuid.uuid4().hex)
        arguments = dict(arguments or {})
        log = logger.bind(tool=name, trace_id=context.trace_id)

        if name in self.capabilities:
            return self._call_capability(name, arguments, context, log)
        if self.runner is not None and name in self.runner.blueprints:
            return self._call_blueprint(name, arguments, context, log)

        log.info("tool.unknown")
        return {"error": UNKNOWN_TOOL, "trace_id": context.trace_id, "details": {"tool": name}}

    def _call_capability(
        self, name: str, arguments: dict[str, Any], context: ExecutionContext, log: Any
    ) -> dict[str, Any]:
        descriptor = self.capabilities.get(name).descriptor
        validated = validate_model(descriptor.schemas.input, arguments, label=f"{name} input")
        if validated.is_err():
            log.info("tool.rejected", fields=validated.details.get("fields"))
            return {
                "error": INPUT_VALIDATION_FAILED,
                "trace_id": context.trace_id,
                "details": validated.details.get("errors", []),
            }

        result = self.invoker.invoke(name, validated.value, context)
        if result.is_ok():
            log.info("tool.completed")
            return {"result": result.to_dict()["value"], "trace_id": context.trace_id}

        log.warning("tool.failed", kind=result.kind.value)
        return {
            "error": result.kind.value,
            "trace_id": context.trace_id,
            "details": {"message": result.message, "retryable": result.retryable, **result.details},
        }

    def _call_blueprint(
        self, name: str, arguments: dict[str, Any], context: ExecutionContext, log: Any
    ) -> dict[str, Any]:
        runner = self.runner
        if runner is None or not runner.running:
            return {"error": WORKER_NOT_RUNNING, "trace_id": context.trace_id, "details": {"tool": name}}

        blueprint = runner.blueprints.get(name)
        try:
            blueprint.input_model.model_validate(arguments)
        except ValidationError as exc:
            log.info("tool.rejected")
            return {
                "error": INPUT_VALIDATION_FAILED,
                "trace_id": context.trace_id,
                "details": [
                    {"field": ".".join(str(p) for p in e["loc"]) or "<root>", "message": e["msg"]}
                    for e in exc.errors(include_url=False, include_input=False)
                ],
            }

        handle = runner.start_run(name, arguments, context)
        try:
            output = handle.result(self.run_timeout)
        except CapabilityError as exc:
            log.warning("tool.failed", kind=exc.kind.value, run_id=handle.run_id)
            return {
                "error": exc.kind.value,
                "trace_id": context.trace_id,
                "details": {"run_id": handle.run_id, **exc.to_dict()},
            }
        except TillerError as exc:
            log.warning("tool.failed", error_type=type(exc).__name__, run_id=handle.run_id)
            return {
                "error": RUNNER_ERROR,
                "trace_id": context.trace_id,
                "details": {"run_id": handle.run_id, **exc.to_dict()},
            }
        except Exception as exc:
            log.warning("tool.failed", error_type=type(exc).__name__, run_id=handle.run_id)
            return {
                "error": RUNNER_ERROR,
                "trace_id": context.trace_id,
                "details": {"run_id": handle.run_id, "error_type": type(exc).__name__, "message": str(exc)},
            }

        log.info("tool.completed", run_id=handle.run_id)
        return {
            "result": output.model_dump(mode="json", by_alias=True),
            "trace_id": context.trace_id,
            "meta": {"run_id": handle.run_id},
        }


__all__ = [
    "ToolSurface",
    "UNKNOWN_TOOL",
    "INPUT_VALIDATION_FAILED",
    "RUNNER_ERROR",
    "WORKER_NOT_RUNNING",
]
