"""Reconciler tests: matching, assignment, retirement and conflicts."""

import sys
import textwrap
from copy import deepcopy
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "packages" / "core_engine" / "src"))

from mb_core.canonical import render_descriptor
from mb_core.errors import ReconciliationError
from mb_core.model import EMPTY_ID, IdUid, PropertyFlags, SchemaDescriptor, iter_uids
from mb_core.parser import parse_source
from mb_core.reconcile import merge, reconcile, retire_unclaimed
from mb_core.uids import UidSource


def _candidate(text: str, path: str = "models.py"):
    return parse_source(textwrap.dedent(text), path)


def _run(text: str, descriptor: SchemaDescriptor = None, seed: int = 1):
    return reconcile(_candidate(text), descriptor or SchemaDescriptor(), UidSource.seeded(seed))


USER = """
@entity
class User:
    id: int = 0
    name: str = ""
"""


class TestAssignment:
    def test_bootstrap_user(self):
        descriptor, plan = _run(USER)
        assert len(descriptor.entities) == 1
        user = descriptor.entities[0]
        assert user.name == "User"
        assert user.id.id == 1
        assert user.id.uid > 0
        assert [(p.name, p.id.id) for p in user.properties] == [("id", 1), ("name", 2)]
        assert user.last_property_id == user.properties[1].id
        assert descriptor.last_entity_id == user.id
        assert plan.entities[0].id == user.id
        assert plan.module == "models"

    def test_ids_follow_declaration_order(self):
        descriptor, _ = _run(
            """
            @entity
            class B:
                id: int = 0

            @entity
            class A:
                id: int = 0
            """
        )
        assert [(e.name, e.id.id) for e in descriptor.entities] == [("B", 1), ("A", 2)]

    def test_uids_are_unique(self):
        descriptor, _ = _run(
            """
            @entity
            class A:
                id: int = 0
                name: str = prop(index=True)

            @entity
            class B:
                id: int = 0
            """
        )
        uids = list(iter_uids(descriptor))
        assert len(uids) == 6
        assert len(set(uids)) == len(uids)

    def test_rerun_is_identical(self):
        first, _ = _run(USER)
        second, plan = _run(USER, first, seed=99)
        assert render_descriptor(first) == render_descriptor(second)
        assert plan.entities[0].id == first.entities[0].id

    def test_input_descriptor_is_not_mutated(self):
        first, _ = _run(USER)
        snapshot = deepcopy(first)
        _run(USER.replace("name: str", "title: str"), first)
        assert first == snapshot

    def test_index_assignment(self):
        descriptor, plan = _run(
            """
            @entity
            class A:
                id: int = 0
                email: str = prop(unique=True)
            """
        )
        email = descriptor.entities[0].properties[1]
        assert email.index_id is not None
        assert email.index_id.id == 1
        assert descriptor.last_index_id == email.index_id
        assert plan.entities[0].properties[1].index_id == email.index_id

    def test_dropping_index_retires_its_uid(self):
        first, _ = _run(
            """
            @entity
            class A:
                id: int = 0
                email: str = prop(index=True)
            """
        )
        index_uid = first.entities[0].properties[1].index_id.uid
        second, _ = _run(
            """
            @entity
            class A:
                id: int = 0
                email: str = ""
            """,
            first,
        )
        assert second.entities[0].properties[1].index_id is None
        assert index_uid in second.retired_uids
        assert second.last_index_id == first.last_index_id

    def test_relations_and_links(self):
        descriptor, plan = _run(
            """
            from typing import List

            @entity
            class Task:
                id: int = 0
                owner: int = prop(link="User")
                watchers: List["User"] = relation()

            @entity
            class User:
                id: int = 0
            """
        )
        task, user = descriptor.entities
        assert task.properties[1].relation_target == "User"
        assert task.relations[0].target_id == user.id
        assert descriptor.last_relation_id == task.relations[0].id
        assert plan.entities[0].relations[0].target_id == user.id

    def test_unknown_relation_target(self):
        with pytest.raises(ReconciliationError) as info:
            _run(
                """
                from typing import List

                @entity
                class Task:
                    id: int = 0
                    watchers: List["Ghost"] = relation()
                """
            )
        assert info.value.entity == "Task"
        assert info.value.property == "watchers"


class TestEvolution:
    def test_property_removed_is_retired(self):
        first, _ = _run(USER)
        second, plan = _run(
            """
            @entity
            class User:
                id: int = 0
            """,
            first,
        )
        name = second.entities[0].properties[1]
        assert name.retired
        assert [p.name for p in plan.entities[0].properties] == ["id"]

    def test_readded_property_gets_new_ids(self):
        first, _ = _run(USER)
        second, _ = _run("@entity\nclass User:\n    id: int = 0\n", first)
        third, _ = _run(USER, second)
        props = third.entities[0].properties
        assert [(p.name, p.id.id, p.retired) for p in props] == [
            ("id", 1, False),
            ("name", 2, True),
            ("name", 3, False),
        ]
        assert props[2].id.uid != props[1].id.uid

    def test_entity_removed_is_retired(self):
        first, _ = _run(USER)
        second, plan = _run("@entity\nclass Other:\n    id: int = 0\n", first)
        assert second.entities[0].retired
        assert second.entities[1].name == "Other"
        assert second.entities[1].id.id == 2
        assert [e.name for e in plan.entities] == ["Other"]

    def test_rename_by_uid(self):
        first, _ = _run(USER)
        user = first.entities[0]
        name_uid = user.properties[1].id.uid
        second, _ = _run(
            f"""
            @entity(uid={user.id.uid})
            class Account:
                id: int = 0
                title: str = prop(uid={name_uid})
            """,
            first,
        )
        account = second.entities[0]
        assert len(second.entities) == 1
        assert account.name == "Account"
        assert account.id == user.id
        assert account.properties[1].name == "title"
        assert account.properties[1].id == user.properties[1].id

    def test_rename_rewrites_links_from_other_files(self):
        uids = UidSource.seeded(3)
        first = merge(_candidate("@entity\nclass A:\n    id: int = 0\n"), SchemaDescriptor(), uids, source="a.py").descriptor
        second = merge(
            _candidate('@entity\nclass B:\n    id: int = 0\n    a: int = prop(link="A")\n'),
            first,
            uids,
            source="b.py",
        ).descriptor
        a_uid = second.entities[0].id.uid
        third = merge(
            _candidate(f"@entity(uid={a_uid})\nclass A2:\n    id: int = 0\n"),
            second,
            uids,
            source="a.py",
        ).descriptor
        assert third.entities[1].properties[1].relation_target == "A2"
        assert second.entities[1].properties[1].relation_target == "A"
        assert render_descriptor(third).count('"relationTarget": "A2"') == 1

    def test_swapped_names_keep_declared_links(self):
        first, _ = _run(
            """
            @entity
            class A:
                id: int = 0

            @entity
            class B:
                id: int = 0

            @entity
            class C:
                id: int = 0
                x: int = prop(link="A")
            """
        )
        a_uid, b_uid = first.entities[0].id.uid, first.entities[1].id.uid
        second, plan = _run(
            f"""
            @entity(uid={a_uid})
            class B:
                id: int = 0

            @entity(uid={b_uid})
            class A:
                id: int = 0

            @entity
            class C:
                id: int = 0
                x: int = prop(link="A")
            """,
            first,
        )
        assert [e.name for e in second.entities] == ["B", "A", "C"]
        assert second.entities[2].properties[1].relation_target == "A"
        assert second.live_entity("A").id.uid == b_uid
        assert plan.entities[2].properties[1].relation_target == "A"

    def test_type_change_keeps_ids(self):
        first, _ = _run(USER)
        second, _ = _run(USER.replace("name: str = \"\"", "name: int = 0"), first)
        assert second.entities[0].properties[1].id == first.entities[0].properties[1].id

    def test_new_sentinel_assigns_fresh_ids(self, caplog):
        descriptor, _ = _run(
            """
            @entity(uid="new")
            class A:
                id: int = 0
            """
        )
        assert descriptor.entities[0].id.id == 1
        assert "replace uid='new'" in caplog.text

    def test_source_scoped_retirement(self):
        first = merge(_candidate(USER), SchemaDescriptor(), UidSource.seeded(3), source="a.py").descriptor
        second = merge(
            _candidate("@entity\nclass Note:\n    id: int = 0\n"),
            first,
            UidSource.seeded(3),
            source="b.py",
        ).descriptor
        assert [e.retired for e in second.entities] == [False, False]

    def test_retire_unclaimed(self):
        first, _ = _run(USER)
        result = retire_unclaimed(first, set(), {"models.py"})
        assert result.entities[0].retired
        assert not first.entities[0].retired


class TestConflicts:
    def test_duplicate_explicit_uid(self):
        first, _ = _run(USER)
        uid = first.entities[0].id.uid
        with pytest.raises(ReconciliationError) as info:
            _run(
                f"""
                @entity(uid={uid})
                class A:
                    id: int = 0

                @entity(uid={uid})
                class B:
                    id: int = 0
                """,
                first,
            )
        assert uid in info.value.uids

    def test_unknown_uid(self):
        with pytest.raises(ReconciliationError) as info:
            _run(
                """
                @entity(uid=12345)
                class A:
                    id: int = 0
                """
            )
        assert "not present in the model" in str(info.value)
        assert info.value.uids == [12345]

    def test_retired_uid(self):
        first, _ = _run(USER)
        uid = first.entities[0].id.uid
        second, _ = _run("@entity\nclass Other:\n    id: int = 0\n", first)
        with pytest.raises(ReconciliationError) as info:
            _run(f"@entity(uid={uid})\nclass User:\n    id: int = 0\n", second)
        assert "retired" in str(info.value)

    def test_retired_property_uid(self):
        first, _ = _run(USER)
        name_uid = first.entities[0].properties[1].id.uid
        second, _ = _run("@entity\nclass User:\n    id: int = 0\n", first)
        with pytest.raises(ReconciliationError) as info:
            _run(f"@entity\nclass User:\n    id: int = 0\n    name: str = prop(uid={name_uid})\n", second)
        assert info.value.property == "name"

    def test_double_claim(self):
        first, _ = _run(
            """
            @entity
            class A:
                id: int = 0

            @entity
            class B:
                id: int = 0
            """
        )
        a_uid = first.entities[0].id.uid
        with pytest.raises(ReconciliationError) as info:
            _run(
                f"""
                @entity(uid={a_uid})
                class B:
                    id: int = 0
                """,
                first,
            )
        assert sorted(info.value.uids) == sorted([a_uid, first.entities[1].id.uid])

    def test_name_match_after_uid_claim(self):
        first, _ = _run(USER)
        uid = first.entities[0].id.uid
        with pytest.raises(ReconciliationError):
            _run(
                f"""
                @entity(uid={uid})
                class Account:
                    id: int = 0

                @entity
                class User:
                    id: int = 0
                """,
                first,
            )

    def test_claimed_in_earlier_file(self):
        first, _ = _run(USER)
        claimed = {first.entities[0].id.uid}
        with pytest.raises(ReconciliationError):
            merge(_candidate(USER, "other.py"), first, UidSource.seeded(2), source="other.py", claimed=claimed)

    def test_relation_targets_start_unlinked_in_merge(self):
        result = merge(
            _candidate(
                """
                from typing import List

                @entity
                class A:
                    id: int = 0
                    others: List["B"] = relation()
                """
            ),
            SchemaDescriptor(),
            UidSource.seeded(1),
        )
        assert result.descriptor.entities[0].relations[0].target_id == EMPTY_ID

    def test_id_flag_survives(self):
        descriptor, _ = _run(USER)
        assert descriptor.entities[0].properties[0].flags == PropertyFlags.ID
        assert isinstance(descriptor.entities[0].id, IdUid)
