"""Load-time check that compiled bindings agree with the compact schema."""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List

from mb_core.binding import EntityBinding, ModelBuilder
from mb_core.canonical import fingerprint
from mb_core.issues import Issue, error, json_path

_PROPERTY_KEYS = ("name", "type", "flags", "indexId", "relationTarget")


def load_compact(path: str) -> Dict[str, Any]:
    compact_file = Path(path)
    if not compact_file.exists():
        raise FileNotFoundError(f"Compact schema not found: {path}")
    with compact_file.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def binding_issues(compact: Dict[str, Any], bindings: Iterable[EntityBinding]) -> List[Issue]:
    issues: List[Issue] = []
    if compact.get("fingerprint") != fingerprint(compact):
        issues.append(error("FINGERPRINT_MISMATCH", "compact schema content does not match its fingerprint"))

    builder = ModelBuilder()
    for binding in bindings:
        binding.add_to_model(builder)

    known = {entity["id"]: entity for entity in compact.get("entities", [])}
    for registered in builder.entities:
        path = json_path(["entities", registered["name"]])
        expected = known.get(registered["id"])
        if expected is None:
            issues.append(error("UNKNOWN_ENTITY", f"entity id {registered['id']} is not in the schema", path))
            continue
        if expected["name"] != registered["name"]:
            issues.append(
                error("ENTITY_NAME_MISMATCH", f"schema names entity {registered['id']} {expected['name']}", path)
            )
        if expected["lastPropertyId"] != registered["lastPropertyId"]:
            issues.append(
                error(
                    "STALE_BINDING",
                    f"lastPropertyId {registered['lastPropertyId']} != schema {expected['lastPropertyId']}",
                    path,
                )
            )

        schema_props = {prop["id"]: prop for prop in expected.get("properties", [])}
        for prop in registered["properties"]:
            prop_path = f"{path}/{prop['name']}"
            schema_prop = schema_props.get(prop["id"])
            if schema_prop is None:
                issues.append(error("UNKNOWN_PROPERTY", f"property id {prop['id']} is not in the schema", prop_path))
                continue
            for key in _PROPERTY_KEYS:
                if schema_prop.get(key) != prop.get(key):
                    issues.append(
                        error(
                            "PROPERTY_MISMATCH",
                            f"{key} is {prop.get(key)!r}, schema has {schema_prop.get(key)!r}",
                            prop_path,
                        )
                    )

        schema_rels = {rel["id"]: rel for rel in expected.get("relations", [])}
        for rel in registered["relations"]:
            schema_rel = schema_rels.get(rel["id"])
            if schema_rel is None or schema_rel["targetId"] != rel["targetId"]:
                issues.append(
                    error("RELATION_MISMATCH", f"relation {rel['name']} ({rel['id']}) does not match the schema", path)
                )

    return issues
