from __future__ import annotations

import types
import typing
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel


def utcnow() -> datetime:
    """
    Naive UTC timestamp.

    All backends store naive UTC datetimes (MongoDB and SQLite both hand
    them back without tzinfo), so comparisons stay consistent everywhere.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The SQL/NoSQL DDL is produced offline by the schema generator using this
    description; the SQL backend builds its tables from the same metadata.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Optional explicit primary key field; defaults to "id" if present
    primary_key: ClassVar[Optional[str]] = "id"

    # Unique indexes as tuples of field names. A unique index only applies
    # to documents/rows where every listed field is set.
    unique_indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = ()

    # Non-unique lookup indexes
    indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        This is the single place to control how models are stored;
        DB adapters can still post-process this if needed.
        """
        return self.model_dump(mode="python", by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.

        The schema generator runs this once (e.g. from the CLI) to produce:
        - SQL DDL for relational databases
        - JSON/metadata for NoSQL collections and indexes
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: List[str] = []

        for name, field in fields.items():
            field_type, nullable = cls._map_type(field.annotation)
            default = None if field.is_required() or field.default_factory else field.default

            properties[name] = {
                "type": field_type,
                "nullable": nullable,
                "default": default.value if hasattr(default, "value") else default,
                "description": field.description,
            }

            if not nullable:
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "unique_indexes": [list(index) for index in cls.unique_indexes],
            "indexes": [list(index) for index in cls.indexes],
        }

    @staticmethod
    def _map_type(annotation: Any) -> Tuple[str, bool]:
        """
        Map a Python / Pydantic type annotation to a generic logical type.

        Returns the logical type and whether the field accepts None.
        The schema generator translates these to dialect-specific types.
        """
        nullable = False
        origin: Any = typing.get_origin(annotation)
        if origin is typing.Union or origin is types.UnionType:
            args = [a for a in typing.get_args(annotation) if a is not type(None)]
            nullable = len(args) != len(typing.get_args(annotation))
            annotation = args[0] if len(args) == 1 else Any
            origin = typing.get_origin(annotation)

        if origin in (list, tuple, set):
            return "array", nullable
        if origin is dict or annotation is dict:
            return "object", nullable

        if annotation is bool:
            return "boolean", nullable
        if annotation is int:
            return "integer", nullable
        if annotation is float:
            return "number", nullable
        if annotation is str:
            return "string", nullable
        if isinstance(annotation, type) and issubclass(annotation, str):
            # str-based enums
            return "string", nullable

        # datetime, UUID, etc.; generator refines by name
        name = getattr(annotation, "__name__", "object")
        return name.lower(), nullable
