"""Schema-gated tool surface over capabilities and blueprints."""

from tiller.tools.surface import ToolSurface

__all__ = ["ToolSurface"]
