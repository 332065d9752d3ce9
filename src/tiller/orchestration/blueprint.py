"""Blueprint - a saga defined as a Python class.

Manifesto:
A blueprint is an ordered procedure composed of capability invocations
plus compensations.  Subclasses declare typed input/output/config
models and implement :meth:`Blueprint.logic`; the runner supplies the
:class:`~tiller.orchestration.orchestrator.SagaOrchestrator`.

ARCHITECTURE
────────────
::

    class BlueGreenDeploy(Blueprint):
        metadata     = BlueprintMetadata(id="blueprints.deploy.blue-green", ...)
        input_model  = BlueGreenInput
        output_model = BlueGreenOutput
        config_model = BlueGreenConfig

        def logic(self, saga, input): ...

    BlueprintRunner ─► blueprint.main(saga, input)
                         ├── logic(saga, input)
                         └── output_model.model_validate(result)

BEST PRACTICES
──────────────
- ``logic`` must be deterministic given its input and recorded step
  outputs; wall-clock reads and random ids belong inside capabilities.
- Register a compensation immediately after the forward step it
  reverses succeeds.

Tags:
    tiller, orchestration, blueprint, saga

Doc-Types:
    api-reference
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel, ValidationError

from tiller.capabilities.descriptor import NoConfig
from tiller.core.config import TillerSettings, get_settings
from tiller.core.errors import ValidationFailedError

if TYPE_CHECKING:
    from tiller.orchestration.orchestrator import SagaOrchestrator


@dataclass(frozen=True)
class BlueprintMetadata:
    id: str
    version: str = "1.0.0"
    description: str = ""
    tags: tuple[str, ...] = ()


def _fields(exc: ValidationError) -> list[str]:
    return [
        ".".join(str(part) for part in error["loc"]) or "<root>"
        for error in exc.errors(include_url=False, include_input=False)
    ]


class Blueprint(ABC):
    """Base class for sagas run by :class:`~tiller.orchestration.runner.BlueprintRunner`."""

    metadata: ClassVar[BlueprintMetadata]
    input_model: ClassVar[type[BaseModel]]
    output_model: ClassVar[type[BaseModel]]
    config_model: ClassVar[type[BaseModel]] = NoConfig

    def __init__(self, config: BaseModel | dict[str, Any] | None = None, settings: TillerSettings | None = None):
        self.settings = settings or get_settings()
        if isinstance(config, BaseModel):
            self.config = config
        else:
            self.config = self.validate(self.config_model, config or {}, "config")

    @property
    def id(self) -> str:
        return self.metadata.id

    @abstractmethod
    def logic(self, saga: SagaOrchestrator, input: Any) -> Any:
        """Forward procedure.  Raise to trigger compensation."""

    def validate(self, model: type[BaseModel], data: Any, label: str) -> BaseModel:
        if isinstance(data, model):
            return data
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            fields = _fields(exc)
            raise ValidationFailedError(
                f"{self.id} {label} failed validation: {', '.join(fields)}", fields=fields
            ).with_context(blueprint_id=self.id) from None

    def validate_input(self, data: Any) -> BaseModel:
        return self.validate(self.input_model, data, "input")

    def main(self, saga: SagaOrchestrator, input: Any) -> BaseModel:
        output = self.logic(saga, self.validate_input(input))
        return self.validate(self.output_model, output, "output")

    @classmethod
    def describe(cls) -> dict[str, Any]:
        return {
            "id": cls.metadata.id,
            "version": cls.metadata.version,
            "description": cls.metadata.description,
            "tags": list(cls.metadata.tags),
            "input_schema": cls.input_model.model_json_schema(by_alias=True),
            "output_schema": cls.output_model.model_json_schema(by_alias=True),
        }


__all__ = ["Blueprint", "BlueprintMetadata"]
