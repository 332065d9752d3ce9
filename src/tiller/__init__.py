"""
tiller - capability runtime and release sagas.

Capabilities are schema-first units of work executed behind an egress
allowlist with scoped secrets; blueprints compose them into durable sagas
that compensate in LIFO order when a step fails.
"""

__version__ = "0.1.0"
