"""Declared tool set and the ToolInvocation tagged union.

Model producers call tools by name with JSON arguments. Those raw calls are
parsed into one of three frozen variants (AppendOutcomes, SetProgress,
CompleteModule) discriminated by ``tool``; anything else is a
ValidationError and is skipped by the turn processor.
"""
from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from module_chat_events.conversation import (
    MAX_PROGRESS,
    MIN_PROGRESS,
    ModuleSummary,
    OutcomeOption,
)
from module_chat_events.models import ValidationError

APPEND_STRUCTURED_OUTCOMES: str = "append_structured_outcomes"
SET_PROGRESS: str = "set_progress"
COMPLETE_MODULE: str = "complete_module"


class ToolOption(BaseModel):
    """Option as a model writes it; ``id`` and ``value`` may be omitted."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = Field(None, min_length=1)
    label: str = Field(..., min_length=1)
    value: Optional[str] = Field(None, min_length=1)


class AppendOutcomes(BaseModel):
    """Present clickable answer options to the user."""

    model_config = ConfigDict(frozen=True)

    tool: Literal["append_structured_outcomes"] = APPEND_STRUCTURED_OUTCOMES
    options: Tuple[ToolOption, ...] = Field(..., min_length=1)

    def outcome_options(self) -> List[OutcomeOption]:
        """Options with missing ids assigned as opt_1..opt_n by position.

        A positional id the model already used for another option is skipped
        in favour of the next free ``opt_<n>``.
        """
        taken = {option.id for option in self.options if option.id}
        result: List[OutcomeOption] = []
        for index, option in enumerate(self.options, start=1):
            option_id = option.id
            if option_id is None:
                candidate = index
                while f"opt_{candidate}" in taken:
                    candidate += 1
                option_id = f"opt_{candidate}"
                taken.add(option_id)
            result.append(OutcomeOption(
                id=option_id,
                label=option.label,
                value=option.value or option.label,
            ))
        return result


class SetProgress(BaseModel):
    """Report module progress as a percentage."""

    model_config = ConfigDict(frozen=True)

    tool: Literal["set_progress"] = SET_PROGRESS
    percent: int = Field(
        ...,
        ge=MIN_PROGRESS,
        le=MAX_PROGRESS,
        validation_alias=AliasChoices("percent", "progress"),
    )


class CompleteModule(BaseModel):
    """Finish the module with a structured summary."""

    model_config = ConfigDict(frozen=True)

    tool: Literal["complete_module"] = COMPLETE_MODULE
    summary: ModuleSummary


ToolInvocation = Annotated[
    Union[AppendOutcomes, SetProgress, CompleteModule],
    Field(discriminator="tool"),
]

_TOOL_ADAPTER: TypeAdapter[Any] = TypeAdapter(ToolInvocation)


def parse_tool_invocation(
    name: str, arguments: Optional[Mapping[str, Any]]
) -> Union[AppendOutcomes, SetProgress, CompleteModule]:
    """Validate a raw tool call into its ToolInvocation variant.

    Raises:
        ValidationError: Unknown tool name or arguments that do not match
            the tool's schema.
    """
    if arguments is not None and not isinstance(arguments, Mapping):
        raise ValidationError(
            f"Arguments for {name!r} must be an object, "
            f"got {type(arguments).__name__}"
        )
    data: Dict[str, Any] = dict(arguments or {})
    data["tool"] = name
    try:
        return _TOOL_ADAPTER.validate_python(data)  # type: ignore[no-any-return]
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed {name!r} invocation: {exc}") from exc


def _declaration(name: str, description: str, model: type[BaseModel]) -> Dict[str, Any]:
    schema = model.model_json_schema()
    schema.get("properties", {}).pop("tool", None)
    schema["required"] = [r for r in schema.get("required", []) if r != "tool"]
    schema.pop("title", None)
    return {"name": name, "description": description, "input_schema": schema}


# Tool set handed to the model producer with every turn
TOOL_DECLARATIONS: Tuple[Dict[str, Any], ...] = (
    _declaration(
        APPEND_STRUCTURED_OUTCOMES,
        "Present clickable option buttons. Write the question in the message "
        "first; the tool carries only the answer options.",
        AppendOutcomes,
    ),
    _declaration(
        SET_PROGRESS,
        f"Report module progress as a percentage from {MIN_PROGRESS} to "
        f"{MAX_PROGRESS}. Call on every turn.",
        SetProgress,
    ),
    _declaration(
        COMPLETE_MODULE,
        "Call once when the module is complete, with a summary of insights, "
        "an assessment and a takeaway.",
        CompleteModule,
    ),
)
