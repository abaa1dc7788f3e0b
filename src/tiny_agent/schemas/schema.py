"""Schema handles for completion payloads.

A :class:`SchemaHandle` pairs a schema name with a JSON-schema document and
the Python type it was derived from. Handles are immutable and are computed
at most once per declared shape: :meth:`CompletionSchema.completion_schema`
builds the handle lazily on first use and stores it on the model class itself,
so every caller observes the same instance.
"""

from __future__ import annotations

import copy
import inspect
import threading
from dataclasses import dataclass
from typing import Any, ClassVar

from pydantic import BaseModel

_HANDLE_ATTR = "__completion_schema_handle__"
_handle_lock = threading.Lock()


@dataclass(frozen=True, eq=False)
class SchemaHandle:
    schema_name: str
    type_name: str
    type_identity: type | None
    schema_document: dict[str, Any]

    @classmethod
    def from_model(cls, model_cls: type[BaseModel], name: str | None = None,
                   description: str | None = None) -> SchemaHandle:
        document = copy.deepcopy(model_cls.model_json_schema())
        schema_name = name or model_cls.__name__
        document["title"] = schema_name
        # pydantic already copies the class's own docstring into the document
        if description:
            document["description"] = inspect.cleandoc(description)
        return cls(
            schema_name=schema_name,
            type_name=f"{model_cls.__module__}.{model_cls.__qualname__}",
            type_identity=model_cls,
            schema_document=document,
        )

    @classmethod
    def from_document(cls, schema_name: str, document: dict[str, Any]) -> SchemaHandle:
        """Wrap a hand-written JSON schema that has no Python type behind it."""
        return cls(
            schema_name=schema_name,
            type_name=schema_name,
            type_identity=None,
            schema_document=copy.deepcopy(document),
        )


class CompletionSchema(BaseModel):
    """Base class for pydantic models usable as a run's completion schema.

    ``schema_title`` and ``schema_description`` override the schema name
    (defaults to the class name) and description (defaults to the docstring).
    """

    schema_title: ClassVar[str | None] = None
    schema_description: ClassVar[str | None] = None

    @classmethod
    def completion_schema(cls) -> SchemaHandle:
        handle = cls.__dict__.get(_HANDLE_ATTR)
        if handle is None:
            with _handle_lock:
                handle = cls.__dict__.get(_HANDLE_ATTR)
                if handle is None:
                    handle = SchemaHandle.from_model(
                        cls, name=cls.schema_title, description=cls.schema_description
                    )
                    type.__setattr__(cls, _HANDLE_ATTR, handle)
        return handle


def resolve_schema_handle(schema: SchemaHandle | type[CompletionSchema]) -> SchemaHandle:
    if isinstance(schema, SchemaHandle):
        return schema
    if isinstance(schema, type) and issubclass(schema, CompletionSchema):
        return schema.completion_schema()
    raise TypeError(f"expected a SchemaHandle or CompletionSchema subclass, got {schema!r}")
