from typing import Any, Dict, List

from mb_core.model import PROPERTY_TYPE_NAMES, EntityInfo, SchemaDescriptor, flag_names


def _index_entities(descriptor: SchemaDescriptor) -> Dict[int, EntityInfo]:
    return {entity.id.uid: entity for entity in descriptor.entities}


def _type_name(code: int) -> str:
    return PROPERTY_TYPE_NAMES.get(code, str(code))


def _diff_entity(old: EntityInfo, new: EntityInfo, breaking: List[str]) -> Dict[str, Any]:
    name = new.name
    old_props = {prop.id.uid: prop for prop in old.properties}
    new_props = {prop.id.uid: prop for prop in new.properties}

    added_properties: List[str] = []
    retired_properties: List[str] = []
    renamed_properties: List[Dict[str, str]] = []
    type_changes: List[Dict[str, Any]] = []
    flag_changes: List[Dict[str, Any]] = []

    for uid, prop in new_props.items():
        before = old_props.get(uid)
        if before is None or before.retired:
            if not prop.retired:
                added_properties.append(prop.name)
            continue
        if prop.retired:
            retired_properties.append(prop.name)
            breaking.append(f"Property retired: {name}.{prop.name}")
            continue
        if before.name != prop.name:
            renamed_properties.append({"from": before.name, "to": prop.name})
        if before.type != prop.type:
            type_changes.append(
                {"property": prop.name, "from_type": _type_name(before.type), "to_type": _type_name(prop.type)}
            )
            breaking.append(f"Property type changed: {name}.{prop.name}")
        if before.flags != prop.flags:
            flag_changes.append(
                {"property": prop.name, "from_flags": flag_names(before.flags), "to_flags": flag_names(prop.flags)}
            )

    old_rels = {rel.id.uid: rel for rel in old.relations}
    added_relations = [
        rel.name
        for rel in new.relations
        if not rel.retired and (rel.id.uid not in old_rels or old_rels[rel.id.uid].retired)
    ]
    retired_relations = []
    for rel in new.relations:
        before = old_rels.get(rel.id.uid)
        if rel.retired and before is not None and not before.retired:
            retired_relations.append(rel.name)
            breaking.append(f"Relation retired: {name}.{rel.name}")

    return {
        "entity": name,
        "added_properties": added_properties,
        "retired_properties": retired_properties,
        "renamed_properties": renamed_properties,
        "type_changes": type_changes,
        "flag_changes": flag_changes,
        "added_relations": added_relations,
        "retired_relations": retired_relations,
    }


def descriptor_diff(old: SchemaDescriptor, new: SchemaDescriptor) -> Dict[str, Any]:
    """Compare two descriptors element by element, matching on UID."""
    old_entities = _index_entities(old)
    new_entities = _index_entities(new)

    added_entities: List[str] = []
    retired_entities: List[str] = []
    renamed_entities: List[Dict[str, str]] = []
    changed_entities: List[Dict[str, Any]] = []
    breaking_changes: List[str] = []

    for uid, entity in new_entities.items():
        before = old_entities.get(uid)
        if before is None or before.retired:
            if not entity.retired:
                added_entities.append(entity.name)
            continue
        if entity.retired:
            retired_entities.append(entity.name)
            breaking_changes.append(f"Entity retired: {entity.name}")
            continue
        if before.name != entity.name:
            renamed_entities.append({"from": before.name, "to": entity.name})
        change = _diff_entity(before, entity, breaking_changes)
        if any(value for key, value in change.items() if key != "entity"):
            changed_entities.append(change)

    missing = sorted(entity.name for uid, entity in old_entities.items() if uid not in new_entities)
    for name in missing:
        breaking_changes.append(f"Entity record dropped: {name}")

    return {
        "summary": {
            "added_entities": len(added_entities),
            "retired_entities": len(retired_entities),
            "renamed_entities": len(renamed_entities),
            "changed_entities": len(changed_entities),
            "breaking_change_count": len(sorted(set(breaking_changes))),
        },
        "added_entities": added_entities,
        "retired_entities": retired_entities,
        "renamed_entities": renamed_entities,
        "changed_entities": changed_entities,
        "breaking_changes": sorted(set(breaking_changes)),
        "has_breaking_changes": bool(breaking_changes),
    }
