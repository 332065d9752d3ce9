"""Capability contracts, the injectable registry and error classification."""

from tiller.capabilities.descriptor import (
    CapabilityDescriptor,
    CapabilityInvocation,
    CapabilitySchemas,
    CostFactor,
    DataClassification,
    ExecutionContext,
    NoConfig,
    NoSecrets,
    OperationsPolicy,
    SecurityPolicy,
)
from tiller.capabilities.registry import CapabilityRegistry, RegisteredCapability

__all__ = [
    "CapabilityDescriptor",
    "CapabilityInvocation",
    "CapabilitySchemas",
    "CostFactor",
    "DataClassification",
    "ExecutionContext",
    "NoConfig",
    "NoSecrets",
    "OperationsPolicy",
    "SecurityPolicy",
    "CapabilityRegistry",
    "RegisteredCapability",
]
