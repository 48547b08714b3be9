"""In-memory model types shared by the parser, reconciler and emitter.

Three families live here:

  - descriptor types (``SchemaDescriptor`` and friends), the durable record of
    every identifier ever issued, retired elements included
  - candidate types, produced fresh by the parser for one source file
  - plan types (``BindingPlan``), the identifier-resolved view the emitter
    renders
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Set, Union

MODEL_VERSION = 5
DESCRIPTOR_VERSION = 1

# Explicit-UID sentinel: the element is meant to be new, assign it normally.
NEW_UID = "new"


class IdUid(NamedTuple):
    id: int
    uid: int

    def __str__(self) -> str:
        return f"{self.id}:{self.uid}"

    @classmethod
    def parse(cls, text: str) -> "IdUid":
        id_text, sep, uid_text = str(text).partition(":")
        if not sep:
            raise ValueError(f"Expected '<id>:<uid>', got {text!r}")
        return cls(int(id_text), int(uid_text))


EMPTY_ID = IdUid(0, 0)


class PropertyType:
    BOOL = 1
    BYTE = 2
    SHORT = 3
    CHAR = 4
    INT = 5
    LONG = 6
    FLOAT = 7
    DOUBLE = 8
    STRING = 9
    DATE = 10
    RELATION = 11
    BYTE_VECTOR = 23
    STRING_VECTOR = 30


PROPERTY_TYPE_NAMES: Dict[int, str] = {
    value: name
    for name, value in vars(PropertyType).items()
    if not name.startswith("_")
}


class PropertyFlags:
    ID = 1
    NULLABLE = 2
    INDEXED = 8
    UNIQUE = 32
    INDEX_HASH = 2048


PROPERTY_FLAG_NAMES: Dict[int, str] = {
    value: name
    for name, value in vars(PropertyFlags).items()
    if not name.startswith("_")
}

INDEX_FLAGS = PropertyFlags.INDEXED | PropertyFlags.UNIQUE | PropertyFlags.INDEX_HASH


def flag_names(flags: int) -> List[str]:
    return [name for value, name in sorted(PROPERTY_FLAG_NAMES.items()) if flags & value]


# ---------------------------------------------------------------------------
# Schema descriptor
# ---------------------------------------------------------------------------

@dataclass
class PropertyInfo:
    id: IdUid
    name: str
    type: int
    flags: int = 0
    index_id: Optional[IdUid] = None
    relation_target: Optional[str] = None
    retired: bool = False
    # keys this version does not know, written back unchanged
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RelationInfo:
    id: IdUid
    name: str
    target_id: IdUid
    retired: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EntityInfo:
    id: IdUid
    name: str
    last_property_id: IdUid = EMPTY_ID
    source: Optional[str] = None
    properties: List[PropertyInfo] = field(default_factory=list)
    relations: List[RelationInfo] = field(default_factory=list)
    retired: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def live_properties(self) -> List[PropertyInfo]:
        return [prop for prop in self.properties if not prop.retired]

    def live_relations(self) -> List[RelationInfo]:
        return [rel for rel in self.relations if not rel.retired]


@dataclass
class SchemaDescriptor:
    entities: List[EntityInfo] = field(default_factory=list)
    last_entity_id: IdUid = EMPTY_ID
    last_index_id: IdUid = EMPTY_ID
    last_relation_id: IdUid = EMPTY_ID
    retired_uids: List[int] = field(default_factory=list)
    model_version: int = MODEL_VERSION
    version: int = DESCRIPTOR_VERSION
    extra: Dict[str, Any] = field(default_factory=dict)

    def live_entities(self) -> List[EntityInfo]:
        return [entity for entity in self.entities if not entity.retired]

    def entity_by_uid(self, uid: int) -> Optional[EntityInfo]:
        for entity in self.entities:
            if entity.id.uid == uid:
                return entity
        return None

    def live_entity(self, name: str) -> Optional[EntityInfo]:
        for entity in self.entities:
            if not entity.retired and entity.name == name:
                return entity
        return None

    def issued_uids(self) -> Set[int]:
        return set(iter_uids(self))


def iter_uids(descriptor: SchemaDescriptor) -> Iterator[int]:
    """Every UID recorded in the descriptor, in file order, duplicates included."""
    for entity in descriptor.entities:
        yield entity.id.uid
        for prop in entity.properties:
            yield prop.id.uid
            if prop.index_id is not None:
                yield prop.index_id.uid
        for rel in entity.relations:
            yield rel.id.uid
    yield from descriptor.retired_uids


# ---------------------------------------------------------------------------
# Candidate model (parser output)
# ---------------------------------------------------------------------------

ExplicitUid = Union[int, str, None]


@dataclass
class CandidateProperty:
    name: str
    type: int
    flags: int = 0
    uid: ExplicitUid = None
    relation_target: Optional[str] = None
    line: int = 0

    @property
    def is_id(self) -> bool:
        return bool(self.flags & PropertyFlags.ID)

    @property
    def has_index(self) -> bool:
        return bool(self.flags & INDEX_FLAGS)


@dataclass
class CandidateRelation:
    name: str
    target: str
    uid: ExplicitUid = None
    line: int = 0


@dataclass
class CandidateEntity:
    name: str
    uid: ExplicitUid = None
    line: int = 0
    properties: List[CandidateProperty] = field(default_factory=list)
    relations: List[CandidateRelation] = field(default_factory=list)

    @property
    def id_property(self) -> CandidateProperty:
        return next(prop for prop in self.properties if prop.is_id)


@dataclass
class CandidateModel:
    source: str
    entities: List[CandidateEntity] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Binding plan (emitter input)
# ---------------------------------------------------------------------------

@dataclass
class PlannedProperty:
    name: str
    id: IdUid
    type: int
    flags: int = 0
    index_id: Optional[IdUid] = None
    relation_target: Optional[str] = None


@dataclass
class PlannedRelation:
    name: str
    id: IdUid
    target: str
    target_id: IdUid


@dataclass
class PlannedEntity:
    name: str
    id: Optional[IdUid]
    last_property_id: IdUid
    properties: List[PlannedProperty] = field(default_factory=list)
    relations: List[PlannedRelation] = field(default_factory=list)

    @property
    def id_property(self) -> Optional[PlannedProperty]:
        for prop in self.properties:
            if prop.flags & PropertyFlags.ID:
                return prop
        return None


@dataclass
class BindingPlan:
    source: str
    module: str
    entities: List[PlannedEntity] = field(default_factory=list)
