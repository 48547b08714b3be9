"""Support library imported by generated ``*_mb.py`` binding modules.

Records are a flat sequence of tagged fields addressed by property id, never
by name, so renamed properties keep reading old data::

    field   := id:u16 type:u8 payload
    payload := fixed-width little-endian scalar
             | length:u32 bytes                  (str, bytes)
             | count:u32 (length:u32 bytes)*     (List[str])

``None`` values are not written; readers fall back to the property default.
"""

import struct
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from mb_core.model import EMPTY_ID, IdUid, PropertyFlags, PropertyType

__all__ = [
    "EntityBinding",
    "IdUid",
    "ModelBuilder",
    "PropertyFlags",
    "PropertySpec",
    "PropertyType",
    "RelationSpec",
    "decode_record",
    "encode_record",
]

_HEADER = struct.Struct("<HB")
_LENGTH = struct.Struct("<I")

_SCALARS: Dict[int, struct.Struct] = {
    PropertyType.BOOL: struct.Struct("<?"),
    PropertyType.BYTE: struct.Struct("<b"),
    PropertyType.SHORT: struct.Struct("<h"),
    PropertyType.CHAR: struct.Struct("<I"),
    PropertyType.INT: struct.Struct("<i"),
    PropertyType.LONG: struct.Struct("<q"),
    PropertyType.FLOAT: struct.Struct("<f"),
    PropertyType.DOUBLE: struct.Struct("<d"),
    PropertyType.DATE: struct.Struct("<q"),
    PropertyType.RELATION: struct.Struct("<Q"),
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class PropertySpec(NamedTuple):
    name: str
    id: IdUid
    type: int
    flags: int = 0
    index_id: Optional[IdUid] = None
    relation_target: Optional[str] = None


class RelationSpec(NamedTuple):
    name: str
    id: IdUid
    target_id: IdUid


def to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


def from_millis(value: int) -> datetime:
    seconds, millis = divmod(value, 1000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=millis * 1000)


def _encode_bytes(raw: bytes) -> bytes:
    return _LENGTH.pack(len(raw)) + raw


def _encode_value(prop_type: int, value: Any) -> bytes:
    if prop_type == PropertyType.DATE and isinstance(value, datetime):
        value = to_millis(value)
    if prop_type in _SCALARS:
        return _SCALARS[prop_type].pack(value)
    if prop_type == PropertyType.STRING:
        return _encode_bytes(value.encode("utf-8"))
    if prop_type == PropertyType.BYTE_VECTOR:
        return _encode_bytes(bytes(value))
    if prop_type == PropertyType.STRING_VECTOR:
        items = [_encode_bytes(item.encode("utf-8")) for item in value]
        return _LENGTH.pack(len(items)) + b"".join(items)
    raise ValueError(f"Unsupported property type code: {prop_type}")


def encode_record(fields: Iterable[Tuple[int, int, Any]]) -> bytes:
    """Encode ``(property id, type, value)`` triples."""
    chunks: List[bytes] = []
    for prop_id, prop_type, value in fields:
        if value is None:
            continue
        chunks.append(_HEADER.pack(prop_id, prop_type))
        chunks.append(_encode_value(prop_type, value))
    return b"".join(chunks)


def _read_bytes(data: bytes, offset: int) -> Tuple[bytes, int]:
    (length,) = _LENGTH.unpack_from(data, offset)
    offset += _LENGTH.size
    end = offset + length
    if end > len(data):
        raise ValueError("Truncated record: length exceeds remaining data")
    return data[offset:end], end


def decode_record(data: bytes) -> Dict[int, Any]:
    """Decode a record into ``{property id: value}``.

    Fields of unknown ids are decoded too (the type byte is enough), so a
    binding can read records written by a newer schema.
    """
    fields: Dict[int, Any] = {}
    offset = 0
    try:
        while offset < len(data):
            prop_id, prop_type = _HEADER.unpack_from(data, offset)
            offset += _HEADER.size
            if prop_type in _SCALARS:
                codec = _SCALARS[prop_type]
                (value,) = codec.unpack_from(data, offset)
                offset += codec.size
                if prop_type == PropertyType.DATE:
                    value = from_millis(value)
            elif prop_type == PropertyType.STRING:
                raw, offset = _read_bytes(data, offset)
                value = raw.decode("utf-8")
            elif prop_type == PropertyType.BYTE_VECTOR:
                value, offset = _read_bytes(data, offset)
            elif prop_type == PropertyType.STRING_VECTOR:
                (count,) = _LENGTH.unpack_from(data, offset)
                offset += _LENGTH.size
                value = []
                for _ in range(count):
                    raw, offset = _read_bytes(data, offset)
                    value.append(raw.decode("utf-8"))
            else:
                raise ValueError(f"Unknown property type code {prop_type} for property id {prop_id}")
            fields[prop_id] = value
    except struct.error as exc:
        raise ValueError(f"Truncated record at offset {offset}") from exc
    return fields


class ModelBuilder:
    """Collects what bindings register; the runtime turns it into its model."""

    def __init__(self) -> None:
        self.entities: List[Dict[str, Any]] = []
        self._current: Optional[Dict[str, Any]] = None
        self._current_property: Optional[Dict[str, Any]] = None

    def entity(self, name: str, id: IdUid) -> None:
        self._current = {
            "id": str(id),
            "name": name,
            "lastPropertyId": str(EMPTY_ID),
            "properties": [],
            "relations": [],
        }
        self._current_property = None
        self.entities.append(self._current)

    def _entity(self) -> Dict[str, Any]:
        if self._current is None:
            raise ValueError("entity() must be called before registering its members")
        return self._current

    def property(self, name: str, prop_type: int, flags: int, id: IdUid) -> None:
        self._current_property = {"id": str(id), "name": name, "type": prop_type, "flags": flags}
        self._entity()["properties"].append(self._current_property)

    def property_index(self, index_id: IdUid) -> None:
        if self._current_property is None:
            raise ValueError("property() must be called before property_index()")
        self._current_property["indexId"] = str(index_id)

    def property_relation(self, target: str, index_id: IdUid) -> None:
        self.property_index(index_id)
        self._current_property["relationTarget"] = target

    def relation(self, name: str, id: IdUid, target_id: IdUid) -> None:
        self._entity()["relations"].append({"id": str(id), "name": name, "targetId": str(target_id)})

    def entity_last_property_id(self, id: IdUid) -> None:
        self._entity()["lastPropertyId"] = str(id)


class EntityBinding:
    entity_class: Any = None
    name: str = ""
    id: IdUid = EMPTY_ID
    last_property_id: IdUid = EMPTY_ID
    id_property: str = "id"
    properties: Tuple[PropertySpec, ...] = ()
    relations: Tuple[RelationSpec, ...] = ()

    def add_to_model(self, model: ModelBuilder) -> None:
        raise NotImplementedError

    def flatten(self, obj: Any) -> bytes:
        raise NotImplementedError

    def load(self, data: bytes) -> Any:
        raise NotImplementedError

    def get_id(self, obj: Any) -> int:
        return getattr(obj, self.id_property)

    def set_id(self, obj: Any, id: int) -> None:
        setattr(obj, self.id_property, id)
