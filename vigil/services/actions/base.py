"""Common interface for playbook actions."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from vigil.core.exceptions import ActionExecutionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionContext:
    """Where an action is running. Passed to execute and compensate."""

    organization_id: int
    playbook_id: int
    execution_id: int
    step_key: str


class Action(ABC):
    """
    A playbook action.

    Subclasses set ``name``, ``description``, ``category`` and optionally an
    ``input_model`` used to validate inputs, and implement ``execute``.
    Actions that can be undone also override ``compensate``, which receives
    the output ``execute`` returned.
    """

    name: str = ""
    description: str = ""
    category: str = "utility"
    input_model: type[BaseModel] | None = None

    def parse_inputs(self, inputs: dict[str, Any]) -> Any:
        """
        Validate raw step inputs against ``input_model``.

        Raises:
            ActionExecutionError: If the inputs don't validate
        """
        if self.input_model is None:
            return inputs
        try:
            return self.input_model.model_validate(inputs)
        except ValidationError as e:
            errors = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'inputs'}: {err['msg']}"
                for err in e.errors()
            )
            raise ActionExecutionError(self.name, f"invalid inputs: {errors}") from e

    @abstractmethod
    async def execute(self, inputs: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        """Run the action. Raise ActionExecutionError on failure."""

    async def compensate(self, output: dict[str, Any], context: ActionContext) -> None:
        raise NotImplementedError(f"Action '{self.name}' has no compensating operation")

    @property
    def compensable(self) -> bool:
        return type(self).compensate is not Action.compensate

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "compensable": self.compensable,
            "inputs": self.input_model.model_json_schema() if self.input_model else None,
        }
