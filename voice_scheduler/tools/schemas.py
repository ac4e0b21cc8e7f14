"""Typed tool-call variants exposed to the chat model.

Each tool is a pydantic model tagged by its ``tool`` literal, and
``ToolCall`` is the discriminated union of all seven.  Raw arguments from
the model (or from a provider webhook) go through ``parse_tool_call``
before anything touches the store, so a misspelled key or a wrong type is
caught at the boundary instead of inside a tool.

The JSON schemas sent to the model are generated from the same classes by
``tool_schemas()``; the class docstring is the tool description.
"""

from __future__ import annotations

import inspect
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator


class _ToolArgs(BaseModel):
    @model_validator(mode="before")
    @classmethod
    def _blank_to_none(cls, data: Any) -> Any:
        # Models sometimes send "" for an optional argument they mean to omit.
        # The "tool" tag is the union discriminator and is left untouched.
        if not isinstance(data, dict):
            return data
        return {
            key: None if key != "tool" and isinstance(value, str) and not value.strip() else value
            for key, value in data.items()
        }


class IdentifyUser(_ToolArgs):
    """Identify the caller by their phone number. Use this as soon as the
    caller gives their phone number, before booking or changing appointments."""

    tool: Literal["identify_user"] = "identify_user"
    phone_number: str = Field(..., description="The caller's phone number")
    name: str | None = Field(None, description="The caller's name, if they gave it")


class FetchSlots(_ToolArgs):
    """Fetch available appointment slots. Use this when the caller asks
    which times are free."""

    tool: Literal["fetch_slots"] = "fetch_slots"
    date: str | None = Field(None, description="Optional date to filter slots (YYYY-MM-DD)")


class BookAppointment(_ToolArgs):
    """Book an appointment for the identified caller. Requires identify_user first."""

    tool: Literal["book_appointment"] = "book_appointment"
    date: str = Field(..., description="The appointment date (YYYY-MM-DD)")
    time: str = Field(..., description="The appointment time, e.g. '09:00 AM'")
    description: str | None = Field(None, description="Optional reason for the appointment")


class RetrieveAppointments(_ToolArgs):
    """Retrieve all active appointments for the identified caller."""

    tool: Literal["retrieve_appointments"] = "retrieve_appointments"


class CancelAppointment(_ToolArgs):
    """Cancel one of the caller's appointments by its ID."""

    tool: Literal["cancel_appointment"] = "cancel_appointment"
    appointment_id: int = Field(..., description="The ID of the appointment to cancel")


class ModifyAppointment(_ToolArgs):
    """Move one of the caller's appointments to a new date, time, or both."""

    tool: Literal["modify_appointment"] = "modify_appointment"
    appointment_id: int = Field(..., description="The ID of the appointment to modify")
    new_date: str | None = Field(None, description="The new date (YYYY-MM-DD)")
    new_time: str | None = Field(None, description="The new time, e.g. '02:00 PM'")


class EndConversation(_ToolArgs):
    """End the conversation when the caller says goodbye or is done."""

    tool: Literal["end_conversation"] = "end_conversation"


ToolCall = Annotated[
    Union[
        IdentifyUser,
        FetchSlots,
        BookAppointment,
        RetrieveAppointments,
        CancelAppointment,
        ModifyAppointment,
        EndConversation,
    ],
    Field(discriminator="tool"),
]

TOOL_MODELS: dict[str, type[_ToolArgs]] = {
    model.model_fields["tool"].default: model
    for model in (
        IdentifyUser,
        FetchSlots,
        BookAppointment,
        RetrieveAppointments,
        CancelAppointment,
        ModifyAppointment,
        EndConversation,
    )
}

TOOL_NAMES: tuple[str, ...] = tuple(TOOL_MODELS)

_tool_call_adapter: TypeAdapter[ToolCall] = TypeAdapter(ToolCall)


class UnknownToolError(ValueError):
    """Raised when the model asks for a tool that does not exist."""


def parse_tool_call(name: str, arguments: dict[str, Any] | None) -> ToolCall:
    """Validate raw *arguments* for tool *name* into its typed variant.

    Raises ``UnknownToolError`` for an unknown name and pydantic's
    ``ValidationError`` for bad arguments.
    """
    if name not in TOOL_MODELS:
        raise UnknownToolError(f"Unknown tool: {name}")
    payload = {k: v for k, v in (arguments or {}).items() if k != "tool"}
    return _tool_call_adapter.validate_python({**payload, "tool": name})


# ── Schemas for the chat model ───────────────────────────────────────


def _clean_property(prop: dict[str, Any]) -> dict[str, Any]:
    prop = {k: v for k, v in prop.items() if k not in ("title", "default")}
    any_of = prop.pop("anyOf", None)
    if any_of:
        # Optional[X] renders as anyOf [X, null]; the model only needs X.
        non_null = [option for option in any_of if option.get("type") != "null"]
        if len(non_null) == 1:
            prop.update(non_null[0])
        else:
            prop["anyOf"] = non_null
    return prop


def _schema_for(name: str, model: type[_ToolArgs]) -> dict[str, Any]:
    raw = model.model_json_schema()
    properties = {
        key: _clean_property(value)
        for key, value in raw.get("properties", {}).items()
        if key != "tool"
    }
    parameters: dict[str, Any] = {"type": "object", "properties": properties}
    required = [key for key in raw.get("required", []) if key != "tool"]
    if required:
        parameters["required"] = required
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": inspect.cleandoc(model.__doc__ or ""),
            "parameters": parameters,
        },
    }


def tool_schemas() -> list[dict[str, Any]]:
    """OpenAI-style function schemas for all seven tools, in a fixed order."""
    return [_schema_for(name, model) for name, model in TOOL_MODELS.items()]
