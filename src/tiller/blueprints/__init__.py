"""Release blueprints: blue/green deploy and progressive rollout."""

from tiller.blueprints.blue_green import BlueGreenDeploy
from tiller.blueprints.progressive_rollout import ProgressiveRollout, decide_stage
from tiller.orchestration.runner import BlueprintRegistry

BLUEPRINTS = (BlueGreenDeploy, ProgressiveRollout)


def default_blueprints() -> BlueprintRegistry:
    registry = BlueprintRegistry()
    for blueprint in BLUEPRINTS:
        registry.register(blueprint)
    return registry


__all__ = ["BLUEPRINTS", "BlueGreenDeploy", "ProgressiveRollout", "decide_stage", "default_blueprints"]
