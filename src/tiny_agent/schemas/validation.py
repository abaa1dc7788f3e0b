"""Validation of structured payloads and the two terminal tool definitions."""

from __future__ import annotations

import logging
from typing import Any, TypeVar

import jsonschema
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from tiny_agent.errors import ValidationError
from tiny_agent.prompts.prompt_layer import render_prompt
from tiny_agent.schemas.schema import SchemaHandle

logger = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 3
FINAL_ANSWER_TOOL_NAME = "final_answer"
STRUCTURED_RESPONSE_TOOL_NAME = "structured_response"
SCHEMA_INSTRUCTION_MARKER = "Structured response requirement:"

M = TypeVar("M", bound=BaseModel)


class FinalAnswerArguments(BaseModel):
    answer: str
    structured: Any = None
    meta: Any = None


class StructuredResponseArguments(BaseModel):
    structured: Any
    meta: Any = None


def _instance_pointer(error: jsonschema.ValidationError) -> str:
    parts = [str(p).replace("~", "~0").replace("/", "~1") for p in error.absolute_path]
    return "/" + "/".join(parts) if parts else "<root>"


def validate(schema: SchemaHandle, instance: Any) -> None:
    """Validate ``instance`` against ``schema`` (JSON Schema draft 7).

    At most ``MAX_SCHEMA_ERRORS`` violations are reported so that an
    adversarial schema cannot blow up the observation fed back to the model.

    Raises:
        ValidationError: if the schema does not compile or the instance does
            not conform.
    """
    try:
        jsonschema.Draft7Validator.check_schema(schema.schema_document)
    except jsonschema.SchemaError as exc:
        raise ValidationError(
            f"Failed to prepare `{schema.schema_name}` schema for validation: {exc.message}"
        ) from exc

    validator = jsonschema.Draft7Validator(schema.schema_document)
    details: list[str] = []
    truncated = False
    for idx, error in enumerate(validator.iter_errors(instance)):
        if idx >= MAX_SCHEMA_ERRORS:
            truncated = True
            break
        details.append(f"{_instance_pointer(error)}: {error.message}")

    if not details:
        return

    detail = "; ".join(details)
    if truncated:
        detail += "; additional errors truncated"
    logger.debug("schema=%s error=%s payload=%s", schema.schema_name, detail, instance)
    raise ValidationError(
        f"Structured payload does not match `{schema.schema_name}` schema: {detail}"
    )


def validate_structured_object(schema: SchemaHandle, payload: Any, field: str) -> None:
    """Require a JSON object for ``field`` and validate it against ``schema``."""
    if not isinstance(payload, dict):
        raise ValidationError(
            f"`{field}` must be a JSON object that matches the `{schema.schema_name}` schema"
        )
    validate(schema, payload)


def final_answer_tool_definition() -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": FINAL_ANSWER_TOOL_NAME,
            "description": "Signal that the agent has completed the task by providing the final answer.",
            "parameters": {
                "type": "object",
                "properties": {
                    "answer": {
                        "type": "string",
                        "description": "Final response for the user",
                    },
                    "structured": {
                        "type": "object",
                        "description": "Structured payload matching the active completion schema",
                        "additionalProperties": True,
                    },
                    "meta": {
                        "type": "object",
                        "description": "Optional metadata about the answer",
                        "additionalProperties": True,
                    },
                },
                "required": ["answer"],
            },
        },
    }


def structured_response_tool_definition(schema: SchemaHandle) -> dict[str, Any]:
    document = schema.schema_document
    structured: dict[str, Any] = {
        "type": "object",
        "description": f"The {schema.schema_name} data structure. This must match the schema exactly.",
    }
    if "properties" in document:
        structured["properties"] = document["properties"]
    if "required" in document:
        structured["required"] = document["required"]
    structured["additionalProperties"] = False

    parameters: dict[str, Any] = {
        "type": "object",
        "properties": {"structured": structured},
        "required": ["structured"],
        "additionalProperties": False,
    }
    # nested models reference "#/$defs/..." relative to the parameters root
    for key in ("$defs", "definitions"):
        if key in document:
            parameters[key] = document[key]

    return {
        "type": "function",
        "function": {
            "name": STRUCTURED_RESPONSE_TOOL_NAME,
            "description": (
                f"Complete the task by providing a {schema.schema_name} object "
                "with all required fields."
            ),
            "parameters": parameters,
        },
    }


def inject_schema_instructions(messages: list[dict[str, Any]], schema: SchemaHandle) -> None:
    """Append the structured-response requirement to a leading system message, once."""
    if not messages or messages[0].get("role") != "system":
        return
    content = messages[0].get("content")
    if not isinstance(content, str) or SCHEMA_INSTRUCTION_MARKER in content:
        return
    instruction = render_prompt(
        "schema_instruction",
        tool_name=STRUCTURED_RESPONSE_TOOL_NAME,
        schema_name=schema.schema_name,
    )
    messages[0]["content"] = f"{content}\n\n{instruction}"


def deserialize_structured(payload: Any, schema: SchemaHandle, model_cls: type[M]) -> M:
    """Turn a validated structured payload back into its declared model type."""
    if schema.type_identity is not model_cls:
        raise ValidationError(
            f"schema `{schema.schema_name}` does not match target type `{model_cls.__qualname__}`"
        )
    try:
        return model_cls.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = "/".join(str(part) for part in first["loc"]) or "<root>"
        raise ValidationError(
            f"failed to deserialize `{schema.schema_name}` at {location}: {first['msg']}"
        ) from exc
