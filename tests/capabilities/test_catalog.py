"""
Tests for tiller.capabilities.catalog.

Covers:
- default_registry() contents and binding state
- camelCase aliases on catalog inputs
- keyword classifiers
"""

import pytest

from tiller.capabilities.canary_analyzer import CANARY_ANALYZER_ID
from tiller.capabilities.catalog import (
    AUTO_FEATURE_FLAG,
    CATALOG,
    CONTAINER_BUILDER,
    MESH_ROUTER,
    default_registry,
    keyword_classifier,
)
from tiller.core.errors import ErrorKind


class TestCatalog:
    def test_default_registry_contents(self):
        registry = default_registry()
        assert len(registry) == len(CATALOG) + 1
        assert registry.get(CANARY_ANALYZER_ID).bound is True
        for descriptor in CATALOG:
            assert registry.get(descriptor.id).bound is False

    def test_registries_are_independent(self):
        first = default_registry()
        first.bind(AUTO_FEATURE_FLAG.id, lambda args, sandbox: {"operation": args.operation})
        assert default_registry().get(AUTO_FEATURE_FLAG.id).bound is False

    def test_inputs_accept_camel_case(self):
        result = AUTO_FEATURE_FLAG.validate_input(
            {"operation": "setFlagState", "targetId": "release-v2-enabled", "rolloutPercentage": 25}
        )
        assert result.unwrap().rollout_percentage == 25

    def test_percentage_bounds(self):
        result = AUTO_FEATURE_FLAG.validate_input({"operation": "setFlagState", "rolloutPercentage": 120})
        assert result.is_err()
        assert result.kind is ErrorKind.VALIDATION_FAILED

    def test_container_build_requires_a_tag(self):
        result = CONTAINER_BUILDER.validate_input({"operation": "build", "context": ".", "tags": []})
        assert result.details["fields"] == ["tags"]

    def test_mesh_weights(self):
        args = MESH_ROUTER.validate_input(
            {"operation": "set-weights", "service": "web", "weights": {"stable": 90, "canary": 10}}
        ).unwrap()
        assert args.weights.canary == 10

    def test_outputs_keep_unknown_fields(self):
        output = CONTAINER_BUILDER.validate_output({"imageRef": "r/w:v1", "sbom": "spdx"}).unwrap()
        assert output.image_ref == "r/w:v1"
        assert output.model_dump()["sbom"] == "spdx"


class TestKeywordClassifier:
    @pytest.mark.parametrize(
        "message,label",
        [("Network unreachable", "RETRYABLE"), ("image not found", "FATAL"), ("disk full", None)],
    )
    def test_keywords(self, message, label):
        classify = keyword_classifier(("network", "timeout"), ("not found",))
        assert classify(RuntimeError(message)) == label
