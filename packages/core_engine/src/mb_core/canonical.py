import hashlib
import json
from typing import Any, Dict, List, Tuple

from mb_core.model import (
    MODEL_VERSION,
    EntityInfo,
    IdUid,
    PropertyInfo,
    RelationInfo,
    SchemaDescriptor,
)

_PROPERTY_KEYS = ("id", "name", "type", "flags", "indexId", "relationTarget", "retired")
_RELATION_KEYS = ("id", "name", "targetId", "retired")
_ENTITY_KEYS = ("id", "lastPropertyId", "name", "retired", "source", "properties", "relations")
_DESCRIPTOR_KEYS = (
    "entities",
    "lastEntityId",
    "lastIndexId",
    "lastRelationId",
    "modelVersion",
    "modelVersionParserMinimum",
    "retiredUids",
    "version",
)

NOTES = {
    "_note1": "KEEP THIS FILE! Check it into a version control system (VCS) like git.",
    "_note2": "modelbind manages crucial IDs for your object model. Do not edit ids by hand.",
    "_note3": "Retired entries reserve their ids and uids forever; never delete them.",
}


def _property_document(prop: PropertyInfo) -> Dict[str, Any]:
    doc: Dict[str, Any] = {"id": str(prop.id), "name": prop.name, "type": prop.type}
    if prop.flags:
        doc["flags"] = prop.flags
    if prop.index_id is not None:
        doc["indexId"] = str(prop.index_id)
    if prop.relation_target is not None:
        doc["relationTarget"] = prop.relation_target
    if prop.retired:
        doc["retired"] = True
    doc.update(prop.extra)
    return doc


def _relation_document(rel: RelationInfo) -> Dict[str, Any]:
    doc: Dict[str, Any] = {"id": str(rel.id), "name": rel.name, "targetId": str(rel.target_id)}
    if rel.retired:
        doc["retired"] = True
    doc.update(rel.extra)
    return doc


def _entity_document(entity: EntityInfo) -> Dict[str, Any]:
    doc: Dict[str, Any] = {
        "id": str(entity.id),
        "lastPropertyId": str(entity.last_property_id),
        "name": entity.name,
    }
    if entity.retired:
        doc["retired"] = True
    if entity.source is not None:
        doc["source"] = entity.source
    doc["properties"] = [_property_document(prop) for prop in entity.properties]
    doc["relations"] = [_relation_document(rel) for rel in entity.relations]
    doc.update(entity.extra)
    return doc


def descriptor_document(descriptor: SchemaDescriptor) -> Dict[str, Any]:
    """Persisted form: entities and properties keep first-appearance order."""
    doc: Dict[str, Any] = dict(NOTES)
    doc["entities"] = [_entity_document(entity) for entity in descriptor.entities]
    doc["lastEntityId"] = str(descriptor.last_entity_id)
    doc["lastIndexId"] = str(descriptor.last_index_id)
    doc["lastRelationId"] = str(descriptor.last_relation_id)
    doc["modelVersion"] = descriptor.model_version
    doc["modelVersionParserMinimum"] = MODEL_VERSION
    doc["retiredUids"] = list(descriptor.retired_uids)
    doc["version"] = descriptor.version
    doc.update(descriptor.extra)
    return doc


def render_descriptor(descriptor: SchemaDescriptor) -> str:
    return json.dumps(descriptor_document(descriptor), indent=2, ensure_ascii=False) + "\n"


def _optional_id(value: Any) -> Any:
    return IdUid.parse(value) if value is not None else None


def _extra(doc: Dict[str, Any], known: Tuple[str, ...]) -> Dict[str, Any]:
    return {key: value for key, value in doc.items() if key not in known and key not in NOTES}


def descriptor_from_document(doc: Dict[str, Any]) -> SchemaDescriptor:
    entities: List[EntityInfo] = []
    for entity in doc.get("entities", []):
        entities.append(
            EntityInfo(
                id=IdUid.parse(entity["id"]),
                name=entity["name"],
                last_property_id=IdUid.parse(entity["lastPropertyId"]),
                source=entity.get("source"),
                properties=[
                    PropertyInfo(
                        id=IdUid.parse(prop["id"]),
                        name=prop["name"],
                        type=prop["type"],
                        flags=prop.get("flags", 0),
                        index_id=_optional_id(prop.get("indexId")),
                        relation_target=prop.get("relationTarget"),
                        retired=bool(prop.get("retired", False)),
                        extra=_extra(prop, _PROPERTY_KEYS),
                    )
                    for prop in entity.get("properties", [])
                ],
                relations=[
                    RelationInfo(
                        id=IdUid.parse(rel["id"]),
                        name=rel["name"],
                        target_id=IdUid.parse(rel["targetId"]),
                        retired=bool(rel.get("retired", False)),
                        extra=_extra(rel, _RELATION_KEYS),
                    )
                    for rel in entity.get("relations", [])
                ],
                retired=bool(entity.get("retired", False)),
                extra=_extra(entity, _ENTITY_KEYS),
            )
        )
    return SchemaDescriptor(
        entities=entities,
        last_entity_id=IdUid.parse(doc["lastEntityId"]),
        last_index_id=IdUid.parse(doc["lastIndexId"]),
        last_relation_id=IdUid.parse(doc["lastRelationId"]),
        retired_uids=list(doc.get("retiredUids", [])),
        model_version=doc["modelVersion"],
        version=doc["version"],
        extra=_extra(doc, _DESCRIPTOR_KEYS),
    )


# ---------------------------------------------------------------------------
# Compact schema
# ---------------------------------------------------------------------------

def compact_document(descriptor: SchemaDescriptor) -> Dict[str, Any]:
    """Runtime-facing view: live elements only, fingerprinted."""
    entities = []
    for entity in descriptor.live_entities():
        properties = []
        for prop in entity.live_properties():
            item: Dict[str, Any] = {"id": str(prop.id), "name": prop.name, "type": prop.type, "flags": prop.flags}
            if prop.index_id is not None:
                item["indexId"] = str(prop.index_id)
            if prop.relation_target is not None:
                item["relationTarget"] = prop.relation_target
            properties.append(item)
        entities.append(
            {
                "id": str(entity.id),
                "name": entity.name,
                "lastPropertyId": str(entity.last_property_id),
                "properties": properties,
                "relations": [
                    {"id": str(rel.id), "name": rel.name, "targetId": str(rel.target_id)}
                    for rel in entity.live_relations()
                ],
            }
        )

    body: Dict[str, Any] = {
        "entities": entities,
        "lastEntityId": str(descriptor.last_entity_id),
        "lastIndexId": str(descriptor.last_index_id),
        "lastRelationId": str(descriptor.last_relation_id),
        "modelVersion": descriptor.model_version,
    }
    body["fingerprint"] = fingerprint(body)
    return body


def fingerprint(body: Dict[str, Any]) -> str:
    payload = {key: value for key, value in body.items() if key != "fingerprint"}
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def render_compact(descriptor: SchemaDescriptor) -> str:
    return json.dumps(compact_document(descriptor), sort_keys=True, separators=(",", ":"), ensure_ascii=False) + "\n"
