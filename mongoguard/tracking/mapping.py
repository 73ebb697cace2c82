"""
Entity mapping: which attributes of an entity are stored, and under what
element names.

Dataclass fields are mapped automatically. A field can be stored under a
different element name with mapped_field():

    @dataclass
    class User:
        id: Optional[str] = mapped_field("_id", default=None)
        name: str = ""

Plain classes are mapped with register_class_map(User, {"id": "_id", "name": "name"}).
"""

import array
import dataclasses
import threading
import typing
from collections.abc import Mapping, Sequence
from typing import Any, Dict, Optional, Type

from ..common.errors import UnmappedMemberError
from .base import unwrap

ELEMENT_NAME = "element_name"

_registry_lock = threading.Lock()
_registered_maps: Dict[type, Dict[str, str]] = {}
_map_cache: Dict[type, Dict[str, str]] = {}


def mapped_field(element_name: Optional[str] = None, **kwargs) -> Any:
    """dataclasses.field() that stores the attribute under element_name."""
    metadata = dict(kwargs.pop("metadata", None) or {})
    if element_name is not None:
        metadata[ELEMENT_NAME] = element_name
    return dataclasses.field(metadata=metadata, **kwargs)


def register_class_map(cls: type, members: Dict[str, str]) -> None:
    """Map a plain (non-dataclass) class: attribute name -> element name."""
    with _registry_lock:
        _registered_maps[cls] = dict(members)
        _map_cache.pop(cls, None)


def class_map(cls: type) -> Dict[str, str]:
    """Attribute -> element name for cls (empty if cls is not mapped)."""
    with _registry_lock:
        cached = _map_cache.get(cls)
        if cached is not None:
            return cached

        members: Dict[str, str] = {}
        if dataclasses.is_dataclass(cls):
            for f in dataclasses.fields(cls):
                members[f.name] = f.metadata.get(ELEMENT_NAME, f.name)
        for klass in reversed(cls.__mro__):
            members.update(_registered_maps.get(klass, {}))

        _map_cache[cls] = members
        return members


def is_mapped_class(cls: type) -> bool:
    return bool(class_map(cls))


def element_name(cls: type, attribute: str) -> str:
    """
    Element name for attribute of cls.

    Raises:
        UnmappedMemberError: If cls has no mapping for attribute
    """
    name = class_map(cls).get(attribute)
    if name is None:
        raise UnmappedMemberError(f"{cls.__module__}.{cls.__qualname__}", attribute)
    return name


def is_array_like(value: Any) -> bool:
    """Fixed-size or snapshot-compared values: tuples, bytes, arrays and dicts."""
    return isinstance(value, (tuple, bytes, bytearray, array.array, dict))


def is_wrappable(value: Any) -> bool:
    """True for instances of mapped classes that are not collections."""
    if value is None or isinstance(value, (str, bytes, Sequence, Mapping)):
        return False
    return is_mapped_class(type(value))


def to_document(value: Any) -> Any:
    """
    Serialize value for the store.

    Mapped entities become sub-documents keyed by element name (None fields
    omitted), lists/tuples/arrays become lists, dicts stay dicts, scalars are
    returned unchanged.
    """
    value = unwrap(value)

    if value is None or isinstance(value, (str, bytes, bool, int, float)):
        return value
    if isinstance(value, bytearray):
        return bytes(value)
    if isinstance(value, array.array):
        return value.tolist()
    if isinstance(value, Mapping):
        return {str(k): to_document(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)) or (isinstance(value, Sequence) and not isinstance(value, str)):
        return [to_document(v) for v in value]

    members = class_map(type(value))
    if members:
        document = {}
        for attribute, element in members.items():
            v = getattr(value, attribute, None)
            if v is not None:
                document[element] = to_document(v)
        return document

    return value


def _strip_optional(annotation: Any) -> Any:
    if typing.get_origin(annotation) is typing.Union:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _from_value(annotation: Any, value: Any) -> Any:
    if value is None:
        return None

    annotation = _strip_optional(annotation)
    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)

    if origin in (list, typing.List) and isinstance(value, list):
        item_type = args[0] if args else Any
        return [_from_value(item_type, v) for v in value]
    if origin is tuple and isinstance(value, (list, tuple)):
        item_type = args[0] if args else Any
        return tuple(_from_value(item_type, v) for v in value)
    if isinstance(annotation, type) and isinstance(value, Mapping) and is_mapped_class(annotation):
        return from_document(annotation, value)
    return value


def from_document(cls: Type[Any], document: Optional[Mapping]) -> Any:
    """
    Rebuild an entity of cls from a stored document.

    Unknown elements are ignored; missing ones keep the class defaults.
    """
    if document is None:
        return None

    members = class_map(cls)
    try:
        hints = typing.get_type_hints(cls)
    except (NameError, TypeError):
        hints = {}

    values = {}
    for attribute, element in members.items():
        if element in document:
            values[attribute] = _from_value(hints.get(attribute, Any), document[element])

    if dataclasses.is_dataclass(cls):
        init_fields = {f.name for f in dataclasses.fields(cls) if f.init}
        entity = cls(**{k: v for k, v in values.items() if k in init_fields})
        for attribute, v in values.items():
            if attribute not in init_fields:
                setattr(entity, attribute, v)
        return entity

    entity = cls.__new__(cls)
    for attribute, v in values.items():
        setattr(entity, attribute, v)
    return entity
