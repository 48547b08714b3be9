"""Reconcile a parsed candidate model against the persisted descriptor.

Every candidate element is resolved in two passes over immutable inputs:

  1. explicit ``uid=`` annotations claim their prior element (renames)
  2. remaining elements match a live prior element by name

Unmatched candidates get the next id of their id space and a fresh UID;
live prior elements nobody claimed are tombstoned. The prior descriptor is
never mutated; callers get a new one back, so a failed file leaves the
caller's state untouched.
"""

import logging
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import AbstractSet, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from mb_core.errors import ReconciliationError
from mb_core.model import (
    EMPTY_ID,
    NEW_UID,
    PROPERTY_TYPE_NAMES,
    BindingPlan,
    CandidateEntity,
    CandidateModel,
    CandidateProperty,
    CandidateRelation,
    EntityInfo,
    IdUid,
    PlannedEntity,
    PlannedProperty,
    PlannedRelation,
    PropertyInfo,
    RelationInfo,
    SchemaDescriptor,
)
from mb_core.uids import UidSource

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    descriptor: SchemaDescriptor
    # entity uid per candidate entity, in declaration order
    entity_uids: List[int] = field(default_factory=list)


class _Merger:
    def __init__(self, descriptor: SchemaDescriptor, uids: UidSource) -> None:
        self.result = deepcopy(descriptor)
        self.uids = uids
        self.issued = self.result.issued_uids()

    def mint(self) -> int:
        uid = self.uids.mint(self.issued)
        self.issued.add(uid)
        return uid

    def next_entity_id(self) -> IdUid:
        value = IdUid(self.result.last_entity_id.id + 1, self.mint())
        self.result.last_entity_id = value
        return value

    def next_index_id(self) -> IdUid:
        value = IdUid(self.result.last_index_id.id + 1, self.mint())
        self.result.last_index_id = value
        return value

    def next_relation_id(self) -> IdUid:
        value = IdUid(self.result.last_relation_id.id + 1, self.mint())
        self.result.last_relation_id = value
        return value

    # -- entities -------------------------------------------------------------

    def merge(
        self,
        candidate: CandidateModel,
        source: Optional[str],
        claimed: AbstractSet[int],
        retire_missing: bool,
    ) -> MergeResult:
        matches = self._match_entities(candidate.entities, claimed)
        entity_uids: List[int] = []
        renamed: Dict[str, str] = {}
        resolved: List[EntityInfo] = []

        for idx, cand in enumerate(candidate.entities):
            prior = matches.get(idx)
            if prior is None:
                entity = EntityInfo(id=self.next_entity_id(), name=cand.name)
                self.result.entities.append(entity)
                logger.info("Entity %s: assigned id %s", cand.name, entity.id)
            else:
                entity = prior
                if entity.name != cand.name:
                    logger.info("Entity %s: renamed from %s (uid %d)", cand.name, entity.name, entity.id.uid)
                    renamed[entity.name] = cand.name
                entity.name = cand.name
            if cand.uid == NEW_UID:
                logger.warning("Entity %s: replace uid=%r with uid=%d to pin its identity", cand.name, NEW_UID, entity.id.uid)

            if source is not None:
                entity.source = source
            resolved.append(entity)
            entity_uids.append(entity.id.uid)

        if renamed:
            self._rename_links(renamed)

        for entity, cand in zip(resolved, candidate.entities):
            self._merge_properties(entity, cand)
            self._merge_relations(entity, cand)

        if retire_missing:
            keep = set(claimed) | set(entity_uids)
            for entity in self.result.live_entities():
                if entity.source == source and entity.id.uid not in keep:
                    retire_entity(entity)

        return MergeResult(descriptor=self.result, entity_uids=entity_uids)

    def _rename_links(self, renamed: Dict[str, str]) -> None:
        # links are stored by target name; files outside this run still hold them
        for entity in self.result.entities:
            for prop in entity.properties:
                new = renamed.get(prop.relation_target)
                if new is not None:
                    logger.info("Property %s.%s: link target %s renamed to %s", entity.name, prop.name, prop.relation_target, new)
                    prop.relation_target = new

    def _match_entities(
        self,
        candidates: Sequence[CandidateEntity],
        claimed: AbstractSet[int],
    ) -> Dict[int, EntityInfo]:
        matches: Dict[int, EntityInfo] = {}
        explicit: Dict[int, str] = {}

        for idx, cand in enumerate(candidates):
            if not isinstance(cand.uid, int):
                continue
            if cand.uid in explicit:
                raise ReconciliationError(
                    f"uid is declared by both {explicit[cand.uid]} and {cand.name}",
                    entity=cand.name,
                    uids=[cand.uid],
                )
            explicit[cand.uid] = cand.name
            prior = self.result.entity_by_uid(cand.uid)
            if prior is None:
                raise ReconciliationError(
                    f"uid is not present in the model; use uid={NEW_UID!r} for a new entity or drop the annotation",
                    entity=cand.name,
                    uids=[cand.uid],
                )
            if prior.retired:
                raise ReconciliationError(
                    f"uid belongs to retired entity {prior.name}; retired identifiers cannot be reused",
                    entity=cand.name,
                    uids=[cand.uid],
                )
            if prior.id.uid in claimed:
                raise ReconciliationError(
                    f"entity {prior.name} is already declared in another source file of this run",
                    entity=cand.name,
                    uids=[cand.uid],
                )
            matches[idx] = prior

        by_uid = {prior.id.uid for prior in matches.values()}
        for idx, prior in matches.items():
            cand = candidates[idx]
            if cand.name == prior.name:
                continue
            other = self.result.live_entity(cand.name)
            if other is not None and other is not prior and other.id.uid not in by_uid:
                raise ReconciliationError(
                    f"uid renames {prior.name} to {cand.name}, but a different entity {cand.name} still exists",
                    entity=cand.name,
                    uids=[prior.id.uid, other.id.uid],
                )

        for idx, cand in enumerate(candidates):
            if idx in matches:
                continue
            prior = self.result.live_entity(cand.name)
            if prior is None:
                continue
            if prior.id.uid in by_uid:
                owner = next(candidates[i].name for i, p in matches.items() if p is prior)
                raise ReconciliationError(
                    f"matches {prior.name} by name, but {owner} already claims it by uid",
                    entity=cand.name,
                    uids=[prior.id.uid],
                )
            if prior.id.uid in claimed:
                raise ReconciliationError(
                    "entity is already declared in another source file of this run",
                    entity=cand.name,
                    uids=[prior.id.uid],
                )
            matches[idx] = prior
            by_uid.add(prior.id.uid)

        return matches

    # -- properties -----------------------------------------------------------

    def _merge_properties(self, entity: EntityInfo, cand: CandidateEntity) -> None:
        matches = _match_members(entity.name, entity.properties, cand.properties, "property")
        used: Set[int] = set()

        for idx, cprop in enumerate(cand.properties):
            prior = matches.get(idx)
            if prior is None:
                prop = PropertyInfo(id=self._next_property_id(entity), name=cprop.name, type=cprop.type)
                entity.properties.append(prop)
                logger.info("Property %s.%s: assigned id %s", entity.name, cprop.name, prop.id)
            else:
                prop = prior
                if prop.name != cprop.name:
                    logger.info("Property %s.%s: renamed from %s", entity.name, cprop.name, prop.name)
                if prop.type != cprop.type:
                    logger.warning(
                        "Property %s.%s: type changed from %s to %s",
                        entity.name,
                        cprop.name,
                        PROPERTY_TYPE_NAMES.get(prop.type, prop.type),
                        PROPERTY_TYPE_NAMES.get(cprop.type, cprop.type),
                    )
            self._apply_property(prop, cprop)
            used.add(prop.id.uid)

        for prop in entity.live_properties():
            if prop.id.uid not in used:
                prop.retired = True
                logger.info("Property %s.%s: retired (uid %d)", entity.name, prop.name, prop.id.uid)

    def _next_property_id(self, entity: EntityInfo) -> IdUid:
        value = IdUid(entity.last_property_id.id + 1, self.mint())
        entity.last_property_id = value
        return value

    def _apply_property(self, prop: PropertyInfo, cprop: CandidateProperty) -> None:
        prop.name = cprop.name
        prop.type = cprop.type
        prop.flags = cprop.flags
        prop.relation_target = cprop.relation_target
        if cprop.has_index and prop.index_id is None:
            prop.index_id = self.next_index_id()
        elif not cprop.has_index and prop.index_id is not None:
            self.result.retired_uids.append(prop.index_id.uid)
            prop.index_id = None

    # -- relations ------------------------------------------------------------

    def _merge_relations(self, entity: EntityInfo, cand: CandidateEntity) -> None:
        matches = _match_members(entity.name, entity.relations, cand.relations, "relation")
        used: Set[int] = set()

        for idx, crel in enumerate(cand.relations):
            rel = matches.get(idx)
            if rel is None:
                # target resolved by link_relations once every entity is known
                rel = RelationInfo(id=self.next_relation_id(), name=crel.name, target_id=EMPTY_ID)
                entity.relations.append(rel)
                logger.info("Relation %s.%s: assigned id %s", entity.name, crel.name, rel.id)
            rel.name = crel.name
            used.add(rel.id.uid)

        for rel in entity.live_relations():
            if rel.id.uid not in used:
                rel.retired = True
                logger.info("Relation %s.%s: retired (uid %d)", entity.name, rel.name, rel.id.uid)


_Member = Union[PropertyInfo, RelationInfo]
_CandidateMember = Union[CandidateProperty, CandidateRelation]


def _match_members(
    entity_name: str,
    priors: Sequence[_Member],
    candidates: Sequence[_CandidateMember],
    kind: str,
) -> Dict[int, _Member]:
    """Resolve properties or relations of one entity: uid first, then name."""
    matches: Dict[int, _Member] = {}
    by_uid: Dict[int, str] = {}
    for idx, cand in enumerate(candidates):
        if not isinstance(cand.uid, int):
            continue
        prior = next((p for p in priors if p.id.uid == cand.uid), None)
        if prior is None:
            raise ReconciliationError(
                f"{kind} uid is not present in entity {entity_name}",
                entity=entity_name,
                property=cand.name,
                uids=[cand.uid],
            )
        if prior.retired:
            raise ReconciliationError(
                f"uid belongs to retired {kind} {prior.name}; retired identifiers cannot be reused",
                entity=entity_name,
                property=cand.name,
                uids=[cand.uid],
            )
        matches[idx] = prior
        by_uid[prior.id.uid] = cand.name

    for idx, prior in list(matches.items()):
        cand = candidates[idx]
        if cand.name == prior.name:
            continue
        other = next((p for p in priors if not p.retired and p.name == cand.name), None)
        if other is not None and other is not prior and other.id.uid not in by_uid:
            raise ReconciliationError(
                f"uid renames {prior.name} to {cand.name}, but a different {kind} {cand.name} still exists",
                entity=entity_name,
                property=cand.name,
                uids=[prior.id.uid, other.id.uid],
            )

    for idx, cand in enumerate(candidates):
        if idx in matches:
            continue
        prior = next((p for p in priors if not p.retired and p.name == cand.name), None)
        if prior is None:
            continue
        if prior.id.uid in by_uid:
            raise ReconciliationError(
                f"matches {kind} {prior.name} by name, but {by_uid[prior.id.uid]} already claims it by uid",
                entity=entity_name,
                property=cand.name,
                uids=[prior.id.uid],
            )
        matches[idx] = prior
        by_uid[prior.id.uid] = cand.name

    return matches


def retire_entity(entity: EntityInfo) -> None:
    entity.retired = True
    logger.info("Entity %s: retired (uid %d)", entity.name, entity.id.uid)


def merge(
    candidate: CandidateModel,
    descriptor: SchemaDescriptor,
    uids: UidSource,
    *,
    source: Optional[str] = None,
    claimed: AbstractSet[int] = frozenset(),
    retire_missing: bool = True,
) -> MergeResult:
    """Assign durable identifiers to ``candidate``; ``descriptor`` is left untouched.

    ``claimed`` holds the entity UIDs earlier files of the same run resolved
    to, so two files cannot both own one entity. With ``retire_missing``, live
    entities recorded for ``source`` that the candidate no longer declares
    are retired.
    """
    return _Merger(descriptor, uids).merge(candidate, source, claimed, retire_missing)


def link_relations(descriptor: SchemaDescriptor, candidates: Iterable[Tuple[CandidateModel, List[int]]]) -> None:
    """Point relations and links at their target entities, in place.

    Runs after every candidate of a run has been merged, so targets may be
    declared in any file of the run.
    """
    for candidate, entity_uids in candidates:
        for cand, uid in zip(candidate.entities, entity_uids):
            entity = descriptor.entity_by_uid(uid)
            if entity is None:
                continue
            live_props = {prop.name: prop for prop in entity.live_properties()}
            for cprop in cand.properties:
                if cprop.relation_target and descriptor.live_entity(cprop.relation_target) is None:
                    raise ReconciliationError(
                        f"link target {cprop.relation_target} is not a known entity",
                        entity=cand.name,
                        property=cprop.name,
                    )
                # a rename merged later in the run may have rewritten it
                live_props[cprop.name].relation_target = cprop.relation_target
            live = {rel.name: rel for rel in entity.live_relations()}
            for crel in cand.relations:
                target = descriptor.live_entity(crel.target)
                if target is None:
                    raise ReconciliationError(
                        f"relation target {crel.target} is not a known entity",
                        entity=cand.name,
                        property=crel.name,
                    )
                live[crel.name].target_id = target.id


def retire_unclaimed(
    descriptor: SchemaDescriptor,
    claimed: AbstractSet[int],
    sources: AbstractSet[str],
    missing_sources: AbstractSet[str] = frozenset(),
) -> SchemaDescriptor:
    """Retire live entities of ``sources`` nobody claimed, and those of deleted files."""
    result = deepcopy(descriptor)
    retired: List[EntityInfo] = []
    for entity in result.live_entities():
        if entity.id.uid in claimed:
            continue
        if entity.source in sources or entity.source in missing_sources:
            retire_entity(entity)
            retired.append(entity)
    for target in retired:
        for entity in result.live_entities():
            for prop in entity.live_properties():
                if prop.relation_target == target.name and result.live_entity(target.name) is None:
                    logger.warning("Property %s.%s: link target %s was retired", entity.name, prop.name, target.name)
            for rel in entity.live_relations():
                if rel.target_id == target.id:
                    logger.warning("Relation %s.%s: target %s was retired", entity.name, rel.name, target.name)
    return result


def module_name(source: str) -> str:
    path = Path(source)
    if (path.parent / "__init__.py").exists():
        return "." + path.stem
    return path.stem


def build_plan(candidate: CandidateModel, descriptor: SchemaDescriptor, entity_uids: List[int], module: str) -> BindingPlan:
    plan = BindingPlan(source=candidate.source, module=module)
    for cand, uid in zip(candidate.entities, entity_uids):
        entity = descriptor.entity_by_uid(uid)
        if entity is None or entity.retired:
            raise ReconciliationError("entity vanished during reconciliation", entity=cand.name, uids=[uid])
        live_props = {prop.name: prop for prop in entity.live_properties()}
        live_rels = {rel.name: rel for rel in entity.live_relations()}
        planned = PlannedEntity(name=entity.name, id=entity.id, last_property_id=entity.last_property_id)
        for cprop in cand.properties:
            prop = live_props[cprop.name]
            planned.properties.append(
                PlannedProperty(
                    name=prop.name,
                    id=prop.id,
                    type=prop.type,
                    flags=prop.flags,
                    index_id=prop.index_id,
                    relation_target=prop.relation_target,
                )
            )
        for crel in cand.relations:
            rel = live_rels[crel.name]
            planned.relations.append(
                PlannedRelation(name=rel.name, id=rel.id, target=crel.target, target_id=rel.target_id)
            )
        plan.entities.append(planned)
    return plan


def reconcile(
    candidate: CandidateModel,
    descriptor: SchemaDescriptor,
    uids: Optional[UidSource] = None,
    *,
    source: Optional[str] = None,
    module: Optional[str] = None,
) -> Tuple[SchemaDescriptor, BindingPlan]:
    """Reconcile one candidate on its own: merge, retire, link and plan."""
    source = source if source is not None else Path(candidate.source).name
    merged = merge(candidate, descriptor, uids or UidSource(), source=source)
    link_relations(merged.descriptor, [(candidate, merged.entity_uids)])
    plan = build_plan(candidate, merged.descriptor, merged.entity_uids, module or Path(candidate.source).stem)
    return merged.descriptor, plan
