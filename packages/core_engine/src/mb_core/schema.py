import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from jsonschema import Draft202012Validator

from mb_core.issues import Issue, error, json_path

DEFAULT_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "model_info.schema.json"


def load_schema(schema_path: Optional[str] = None) -> Dict[str, Any]:
    path = Path(schema_path) if schema_path else DEFAULT_SCHEMA_PATH
    if not path.exists():
        raise FileNotFoundError(f"Schema file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def schema_issues(document: Dict[str, Any], schema: Dict[str, Any]) -> List[Issue]:
    validator = Draft202012Validator(schema)
    issues: List[Issue] = []

    for err in sorted(validator.iter_errors(document), key=lambda e: [str(p) for p in e.absolute_path]):
        issues.append(
            error(
                "DESCRIPTOR_SCHEMA_INVALID",
                err.message,
                path=json_path(list(err.absolute_path)),
            )
        )

    return issues


def _split(value: str) -> List[int]:
    id_text, _, uid_text = value.partition(":")
    return [int(id_text), int(uid_text)]


def consistency_issues(document: Dict[str, Any]) -> List[Issue]:
    """Cross-reference checks a JSON schema cannot express.

    Expects a document that already passed ``schema_issues``.
    """
    issues: List[Issue] = []
    seen_uids: Dict[int, str] = {}

    def claim(uid: int, path: str) -> None:
        if uid == 0:
            issues.append(error("ZERO_UID", "uid 0 is reserved", path))
        elif uid in seen_uids:
            issues.append(error("DUPLICATE_UID", f"uid {uid} already used at {seen_uids[uid]}", path))
        else:
            seen_uids[uid] = path

    def check_last(last: List[int], ids: Dict[int, int], label: str, path: str, exact: bool) -> None:
        last_id, last_uid = last
        over = sorted(i for i in ids if i > last_id)
        if over:
            issues.append(error("ID_ABOVE_COUNTER", f"{label} id {over[0]} exceeds counter {last_id}", path))
        if exact and last_id and ids.get(last_id) != last_uid:
            issues.append(error("DANGLING_LAST_ID", f"{label} {last_id}:{last_uid} matches no element", path))

    entities = document.get("entities", [])
    entity_ids: Dict[int, int] = {}
    index_ids: Dict[int, int] = {}
    relation_ids: Dict[int, int] = {}
    entity_names: Set[str] = set()
    entity_keys: Set[str] = set()

    for e_idx, entity in enumerate(entities):
        e_path = json_path(["entities", e_idx])
        e_id, e_uid = _split(entity["id"])
        if e_id == 0:
            issues.append(error("ZERO_ID", "entity id 0 is reserved", e_path))
        if e_id in entity_ids:
            issues.append(error("DUPLICATE_ID", f"entity id {e_id} used twice", e_path))
        entity_ids[e_id] = e_uid
        entity_keys.add(entity["id"])
        entity_names.add(entity["name"])
        claim(e_uid, e_path)

        property_ids: Dict[int, int] = {}
        for p_idx, prop in enumerate(entity.get("properties", [])):
            p_path = json_path(["entities", e_idx, "properties", p_idx])
            p_id, p_uid = _split(prop["id"])
            if p_id == 0:
                issues.append(error("ZERO_ID", "property id 0 is reserved", p_path))
            if p_id in property_ids:
                issues.append(error("DUPLICATE_ID", f"property id {p_id} used twice in {entity['name']}", p_path))
            property_ids[p_id] = p_uid
            claim(p_uid, p_path)
            if "indexId" in prop:
                i_id, i_uid = _split(prop["indexId"])
                if i_id in index_ids:
                    issues.append(error("DUPLICATE_ID", f"index id {i_id} used twice", p_path))
                index_ids[i_id] = i_uid
                claim(i_uid, p_path + "/indexId")

        check_last(
            _split(entity["lastPropertyId"]),
            property_ids,
            f"{entity['name']} lastPropertyId",
            e_path,
            exact=True,
        )

        for r_idx, rel in enumerate(entity.get("relations", [])):
            r_path = json_path(["entities", e_idx, "relations", r_idx])
            r_id, r_uid = _split(rel["id"])
            if r_id in relation_ids:
                issues.append(error("DUPLICATE_ID", f"relation id {r_id} used twice", r_path))
            relation_ids[r_id] = r_uid
            claim(r_uid, r_path)

    for idx, uid in enumerate(document.get("retiredUids", [])):
        claim(uid, json_path(["retiredUids", idx]))

    check_last(_split(document["lastEntityId"]), entity_ids, "lastEntityId", "/lastEntityId", exact=True)
    check_last(_split(document["lastIndexId"]), index_ids, "lastIndexId", "/lastIndexId", exact=False)
    check_last(_split(document["lastRelationId"]), relation_ids, "lastRelationId", "/lastRelationId", exact=False)

    for counter in ("lastIndexId", "lastRelationId"):
        last_id, last_uid = _split(document[counter])
        if last_id and last_uid not in seen_uids:
            issues.append(error("DANGLING_LAST_ID", f"{counter} uid {last_uid} was never issued", "/" + counter))

    for e_idx, entity in enumerate(entities):
        for p_idx, prop in enumerate(entity.get("properties", [])):
            target = prop.get("relationTarget")
            if target is not None and target not in entity_names:
                issues.append(
                    error(
                        "DANGLING_REFERENCE",
                        f"relation target {target} is not a known entity",
                        json_path(["entities", e_idx, "properties", p_idx, "relationTarget"]),
                    )
                )
        for r_idx, rel in enumerate(entity.get("relations", [])):
            if rel["targetId"] not in entity_keys:
                issues.append(
                    error(
                        "DANGLING_REFERENCE",
                        f"relation target {rel['targetId']} is not a known entity",
                        json_path(["entities", e_idx, "relations", r_idx, "targetId"]),
                    )
                )

    return issues
