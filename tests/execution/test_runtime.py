"""
Tests for tiller.execution.runtime and tiller.execution.invoker.

Covers:
- Every handler outcome folded into exactly one Ok or Err
- Secrets mounted as 0600 files, never placed in the context
- Secret values scrubbed from errors
- Sandbox teardown
- Validation before execution, classified retries
"""

import os
import stat

import pytest
from pydantic import BaseModel, Field

from tiller.capabilities.descriptor import (
    CapabilityDescriptor,
    CapabilitySchemas,
    ExecutionContext,
    OperationsPolicy,
    SecurityPolicy,
)
from tiller.capabilities.registry import CapabilityRegistry
from tiller.core.errors import (
    CapabilityNotFoundError,
    ErrorKind,
    FatalCapabilityError,
    RetryableCapabilityError,
)
from tiller.core.logging import REDACTED
from tiller.execution.invoker import CapabilityInvoker
from tiller.execution.retry import RetryPolicy


class PingInput(BaseModel):
    target: str
    count: int = Field(default=1, ge=1)


class PingOutput(BaseModel):
    replies: int


class PingConfig(BaseModel):
    verbose: bool = False


class PingSecrets(BaseModel):
    api_key: str


def ping_descriptor(**operations) -> CapabilityDescriptor:
    return CapabilityDescriptor(
        id="test.ping",
        version="1.0.0",
        schemas=CapabilitySchemas(input=PingInput, output=PingOutput, config=PingConfig, secrets=PingSecrets),
        security=SecurityPolicy(allow_outbound=("api.example.com",)),
        operations=OperationsPolicy(**operations),
    )


@pytest.fixture
def ctx(context: ExecutionContext) -> ExecutionContext:
    return context.derive(secret_refs={"api_key": "prom-token"})


def invoker_for(handler, runtime, **operations) -> CapabilityInvoker:
    registry = CapabilityRegistry()
    registry.register(ping_descriptor(**operations), handler)
    return CapabilityInvoker(registry, runtime, sleep=lambda seconds: None)


class TestRuntimeOutcomes:
    def test_ok_with_validated_output(self, runtime, ctx):
        result = invoker_for(lambda args, sandbox: {"replies": args.count}, runtime).invoke(
            "test.ping", {"target": "a", "count": 3}, ctx
        )
        assert result.unwrap() == PingOutput(replies=3)

    def test_invalid_output(self, runtime, ctx):
        result = invoker_for(lambda args, sandbox: {"replies": "many"}, runtime).invoke("test.ping", {"target": "a"}, ctx)
        assert result.kind is ErrorKind.VALIDATION_FAILED
        assert result.details["fields"] == ["replies"]

    def test_unbound_capability(self, runtime, ctx):
        registry = CapabilityRegistry()
        registry.register(ping_descriptor())
        result = CapabilityInvoker(registry, runtime).invoke("test.ping", {"target": "a"}, ctx)
        assert result.kind is ErrorKind.RUNNER_ERROR
        assert "No handler bound" in result.message

    def test_kind_bearing_exception(self, runtime, ctx):
        def handler(args, sandbox):
            raise FatalCapabilityError("quota exhausted", details={"quota": 0})

        result = invoker_for(handler, runtime).invoke("test.ping", {"target": "a"}, ctx)
        assert result.kind is ErrorKind.FATAL
        assert result.details == {"quota": 0}

    def test_unclassified_exception_is_runner_error(self, runtime, ctx):
        def handler(args, sandbox):
            raise KeyError("boom")

        result = invoker_for(handler, runtime).invoke("test.ping", {"target": "a"}, ctx)
        assert result.kind is ErrorKind.RUNNER_ERROR
        assert result.retryable is False
        assert result.details["exception_type"] == "KeyError"
        assert result.details["classification"] == "FATAL"

    def test_failing_classifier_still_yields_runner_error(self, runtime, ctx):
        def handler(args, sandbox):
            raise RuntimeError("boom")

        def broken(exc):
            raise KeyError("classifier bug")

        result = invoker_for(handler, runtime, classify=broken).invoke("test.ping", {"target": "a"}, ctx)
        assert result.kind is ErrorKind.RUNNER_ERROR
        assert result.retryable is False
        assert result.details["exception_type"] == "RuntimeError"

    def test_egress_denial_from_handler(self, runtime, ctx):
        def handler(args, sandbox):
            sandbox.http.get(f"https://{args.target}/")
            return {"replies": 1}

        result = invoker_for(handler, runtime).invoke("test.ping", {"target": "evil.example.org"}, ctx)
        assert result.kind is ErrorKind.OUTBOUND_HOST_NOT_ALLOWED
        assert result.details["host"] == "evil.example.org"


class TestSecrets:
    def test_secret_mounted_as_private_file(self, runtime, ctx):
        seen = {}

        def handler(args, sandbox):
            path = sandbox.secret_path("api_key")
            seen["mode"] = stat.S_IMODE(os.stat(path).st_mode)
            seen["value"] = sandbox.read_secret("api_key").get_secret()
            seen["refs"] = dict(sandbox.context.secret_refs)
            seen["workdir"] = sandbox.workdir
            return {"replies": 1}

        invoker_for(handler, runtime).invoke("test.ping", {"target": "a"}, ctx).unwrap()
        assert seen["mode"] == 0o600
        assert seen["value"] == "s3cr3t-value"
        assert seen["refs"] == {"api_key": "prom-token"}
        assert not seen["workdir"].exists()

    def test_missing_ref_is_missing_secret(self, runtime, context):
        calls = []
        result = invoker_for(lambda args, sandbox: calls.append(1), runtime).invoke(
            "test.ping", {"target": "a"}, context
        )
        assert result.kind is ErrorKind.MISSING_SECRET
        assert result.retryable is False
        assert calls == []

    def test_unresolvable_ref_is_missing_secret(self, runtime, context):
        ctx = context.derive(secret_refs={"api_key": "secret:env:TILLER_TEST_ABSENT"})
        result = invoker_for(lambda args, sandbox: {"replies": 1}, runtime).invoke("test.ping", {"target": "a"}, ctx)
        assert result.kind is ErrorKind.MISSING_SECRET
        assert "s3cr3t-value" not in result.message

    def test_secret_value_scrubbed_from_error(self, runtime, ctx):
        def handler(args, sandbox):
            raise RuntimeError(f"upstream rejected key {sandbox.read_secret('api_key').get_secret()}")

        result = invoker_for(handler, runtime).invoke("test.ping", {"target": "a"}, ctx)
        assert "s3cr3t-value" not in result.message
        assert REDACTED in result.message
        assert result.cause is None

    def test_sandbox_removed_after_failure(self, runtime, ctx, tmp_path):
        def handler(args, sandbox):
            raise RuntimeError("nope")

        invoker_for(handler, runtime).invoke("test.ping", {"target": "a"}, ctx)
        assert list((tmp_path / "sandboxes").iterdir()) == []


class TestInvoker:
    def test_unknown_capability_raises(self, runtime, ctx):
        with pytest.raises(CapabilityNotFoundError):
            CapabilityInvoker(CapabilityRegistry(), runtime).invoke("test.nope", {}, ctx)

    def test_invalid_args_never_reach_handler(self, runtime, ctx):
        calls = []
        result = invoker_for(lambda args, sandbox: calls.append(args), runtime).invoke(
            "test.ping", {"count": 0}, ctx
        )
        assert result.kind is ErrorKind.VALIDATION_FAILED
        assert calls == []

    def test_invalid_config_rejected(self, runtime, ctx):
        result = invoker_for(lambda args, sandbox: {"replies": 1}, runtime).invoke(
            "test.ping", {"target": "a"}, ctx.derive(config={"verbose": "loud"})
        )
        assert result.kind is ErrorKind.VALIDATION_FAILED

    def test_handler_sees_validated_config(self, runtime, ctx):
        seen = []

        def handler(args, sandbox):
            seen.append(sandbox.config)
            return {"replies": 1}

        invoker_for(handler, runtime).invoke("test.ping", {"target": "a"}, ctx.derive(config={"verbose": True}))
        assert seen == [PingConfig(verbose=True)]

    def test_retryable_failures_follow_policy(self, runtime, ctx):
        attempts = []
        sleeps = []

        def handler(args, sandbox):
            attempts.append(1)
            if len(attempts) < 3:
                raise RetryableCapabilityError("busy")
            return {"replies": 1}

        registry = CapabilityRegistry()
        registry.register(
            ping_descriptor(retry_policy=RetryPolicy(max_attempts=3, initial_interval_seconds=2, backoff_coefficient=2)),
            handler,
        )
        result = CapabilityInvoker(registry, runtime, sleep=sleeps.append).invoke("test.ping", {"target": "a"}, ctx)
        assert result.is_ok()
        assert sleeps == [2.0, 4.0]

    def test_fatal_failures_are_not_retried(self, runtime, ctx):
        attempts = []

        def handler(args, sandbox):
            attempts.append(1)
            raise RuntimeError("bad request")

        invoker = invoker_for(
            handler,
            runtime,
            retry_policy=RetryPolicy(max_attempts=5),
            classify=lambda exc: "FATAL",
        )
        assert invoker.invoke("test.ping", {"target": "a"}, ctx).is_err()
        assert attempts == [1]

    def test_classifier_makes_runner_error_retryable(self, runtime, ctx):
        attempts = []

        def handler(args, sandbox):
            attempts.append(1)
            raise RuntimeError("flaky backend")

        invoker = invoker_for(
            handler,
            runtime,
            retry_policy=RetryPolicy(max_attempts=2, initial_interval_seconds=0),
            classify=lambda exc: "TRANSIENT",
        )
        result = invoker.invoke("test.ping", {"target": "a"}, ctx)
        assert result.kind is ErrorKind.RUNNER_ERROR
        assert result.retryable is True
        assert len(attempts) == 2
