"""Capability execution: egress gate, sandbox, runtime, retry and the invocation boundary."""
