"""TableEntity and Field types for tablekit."""

from __future__ import annotations

import inspect
import sys
from datetime import datetime
from typing import Any, ClassVar, Generic, TypeVar, get_args

from pydantic import BaseModel, create_model

from tablekit.filters import FieldProxy
from tablekit.store import EntityRecord

T = TypeVar("T")

_SENTINEL = object()

SYSTEM_FIELDS = ("partition_key", "row_key", "etag", "timestamp")


class Field(Generic[T]):
    """Typed field descriptor for TableEntity schemas.

    Class-level access returns a FieldProxy, so ``Customer.age > 30`` builds a
    filter expression.
    """

    def __init__(
        self,
        default: Any = _SENTINEL,
        *,
        default_factory: Any | None = None,
    ) -> None:
        self.default = default
        self.default_factory = default_factory
        self.name: str = ""
        self.annotation: Any = None

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    def __get__(self, obj: Any, objtype: type | None = None) -> Any:
        if obj is None:
            return FieldProxy(self.name)
        return obj.__dict__.get(self.name, _SENTINEL)

    def __set__(self, obj: Any, value: Any) -> None:
        obj.__dict__[self.name] = value

    def has_default(self) -> bool:
        return self.default is not _SENTINEL or self.default_factory is not None

    def get_default(self) -> Any:
        if self.default_factory is not None:
            return self.default_factory()
        if self.default is not _SENTINEL:
            return self.default
        raise ValueError(f"Field '{self.name}' has no default")


def _resolve_annotation(ann: Any, module_name: str) -> Any:
    """Resolve string annotations and extract the inner type from Field[T]."""
    if isinstance(ann, str):
        module = sys.modules.get(module_name, None)
        ns = vars(module) if module else {}
        try:
            ann = eval(ann, ns)  # noqa: S307
        except Exception:
            return Any

    origin = getattr(ann, "__origin__", None)
    if origin is Field:
        args = get_args(ann)
        return args[0] if args else Any
    return ann


def _is_field_annotation(ann: Any) -> bool:
    if isinstance(ann, str):
        return ann.startswith("Field[") or ann == "Field"
    return getattr(ann, "__origin__", None) is Field


def _collect_fields(cls: type) -> dict[str, Field[Any]]:
    """Collect Field descriptors from the annotations of ``cls`` and its bases."""
    fields: dict[str, Field[Any]] = {}

    for owner in reversed(cls.__mro__):
        if not (isinstance(owner, type) and issubclass(owner, TableEntity)):
            continue
        for name, ann in inspect.get_annotations(owner).items():
            if not _is_field_annotation(ann):
                continue

            val = owner.__dict__.get(name, _SENTINEL)
            field_desc: Field[Any]
            if isinstance(val, Field):
                field_desc = val
            elif val is None:
                # `note: Field[str | None] = None` shorthand
                field_desc = Field(default=None)
            elif val is _SENTINEL:
                field_desc = Field()
            else:
                field_desc = Field(default=val)

            field_desc.name = name
            field_desc.annotation = _resolve_annotation(ann, owner.__module__)
            fields[name] = field_desc

    # Install descriptors only after every owner's raw defaults were read.
    for name, field_desc in fields.items():
        if cls.__dict__.get(name) is not field_desc:
            setattr(cls, name, field_desc)

    return fields


def _build_pydantic_model(model_name: str, fields: dict[str, Field[Any]]) -> type[BaseModel]:
    """Build a Pydantic model from Field definitions."""
    pydantic_fields: dict[str, Any] = {}
    for name, f in fields.items():
        ann = f.annotation if f.annotation is not None else Any
        if f.default_factory is not None:
            from pydantic import Field as PydanticField

            pydantic_fields[name] = (ann, PydanticField(default_factory=f.default_factory))
        elif f.default is not _SENTINEL:
            pydantic_fields[name] = (ann, f.default)
        else:
            pydantic_fields[name] = (ann, ...)

    return create_model(model_name, **pydantic_fields)  # type: ignore[call-overload]


class TableEntity:
    """Base class for typed table entities with automatic validation.

    Every entity carries its identity (``partition_key``, ``row_key``) and the
    store-maintained ``etag`` and ``timestamp``. Subclasses add their own
    ``Field[T]`` annotations. A subclass may give ``partition_key`` a default
    to pin all of its rows to one partition.

    Azure Table Storage only stores EDM scalar types (str, int, float, bool,
    datetime, bytes, UUID); list and dict fields work on the memory and
    DynamoDB stores but the Azure SDK rejects them with TypeError. Serialize
    such values yourself (e.g. to a JSON string) for entities stored on Azure.
    """

    __entity_name__: ClassVar[str]
    __entity_fields__: ClassVar[tuple[str, ...]]
    _pydantic_model: ClassVar[type[BaseModel]]
    _field_definitions: ClassVar[dict[str, Field[Any]]]

    partition_key: Field[str]
    row_key: Field[str]
    etag: Field[str | None] = None
    timestamp: Field[datetime | None] = None

    def __init_subclass__(cls, name: str | None = None, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)

        cls.__entity_name__ = name or cls.__name__

        fields = _collect_fields(cls)
        cls._field_definitions = fields
        cls.__entity_fields__ = tuple(n for n in fields if n not in SYSTEM_FIELDS)

        cls._pydantic_model = _build_pydantic_model(f"_{cls.__entity_name__}Model", fields)

    def __init__(self, **data: Any) -> None:
        validated = self._pydantic_model(**data)
        for name in self._field_definitions:
            setattr(self, name, getattr(validated, name))

    def model_dump(self) -> dict[str, Any]:
        """Caller-defined field values, without identity or store metadata."""
        return {name: getattr(self, name) for name in self.__entity_fields__}

    @classmethod
    def model_validate(cls, data: dict[str, Any]) -> Any:
        return cls(**data)

    def to_record(self) -> EntityRecord:
        return EntityRecord(
            partition_key=self.partition_key,
            row_key=self.row_key,
            fields=self.model_dump(),
            etag=self.etag,
            timestamp=self.timestamp,
        )

    @classmethod
    def from_record(cls, record: EntityRecord) -> Any:
        # Stored properties the type does not declare are dropped.
        data = {k: v for k, v in record.fields.items() if k in cls.__entity_fields__}
        return cls(
            partition_key=record.partition_key,
            row_key=record.row_key,
            etag=record.etag,
            timestamp=record.timestamp,
            **data,
        )

    def __repr__(self) -> str:
        names = ("partition_key", "row_key") + self.__entity_fields__
        fields = ", ".join(f"{k}={getattr(self, k)!r}" for k in names)
        return f"{self.__class__.__name__}({fields})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, self.__class__):
            return NotImplemented
        return (
            self.partition_key == other.partition_key
            and self.row_key == other.row_key
            and self.model_dump() == other.model_dump()
        )
