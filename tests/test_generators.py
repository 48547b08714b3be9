"""Emitter tests: the generated module is imported and exercised."""

import importlib
import sys
import textwrap
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "packages" / "core_engine" / "src"))

from mb_core.binding import ModelBuilder
from mb_core.canonical import compact_document
from mb_core.compat import binding_issues
from mb_core.errors import GeneratorInternalError
from mb_core.generators import binding_instance_name, generate_binding
from mb_core.model import BindingPlan, IdUid, PlannedEntity, PlannedProperty, PropertyFlags, PropertyType, SchemaDescriptor
from mb_core.parser import parse_file
from mb_core.reconcile import module_name, reconcile
from mb_core.uids import UidSource

PEOPLE = textwrap.dedent(
    """
    from datetime import datetime
    from typing import List, Optional

    from mb_core.annotations import entity, prop, relation


    @entity
    class Person:
        id: int = 0
        name: str = prop(index=True)
        age: int = prop(type="short")
        score: float = 0.0
        active: bool = False
        born: Optional[datetime] = None
        tags: List[str] = []
        avatar: bytes = b""
        nickname: Optional[str] = None
        team: int = prop(link="Team")
        friends: List["Person"] = relation()


    @entity
    class Team:
        id: int = 0
        title: str = ""
    """
)


def _generate(tmp_path: Path, module: str, text: str = PEOPLE):
    source = tmp_path / f"{module}.py"
    source.write_text(text, encoding="utf-8")
    candidate = parse_file(str(source))
    descriptor, plan = reconcile(candidate, SchemaDescriptor(), UidSource.seeded(11), module=module_name(str(source)))
    code = generate_binding(plan)
    (tmp_path / f"{module}_mb.py").write_text(code, encoding="utf-8")
    return descriptor, plan, code


def _write(directory: Path, name: str, text: str) -> Path:
    path = directory / name
    path.write_text(text, encoding="utf-8")
    return path


def _import(monkeypatch, tmp_path: Path, name: str):
    monkeypatch.syspath_prepend(str(tmp_path))
    sys.modules.pop(name, None)
    return importlib.import_module(name)


class TestRenderedSource:
    def test_header_and_import(self, tmp_path):
        _, _, code = _generate(tmp_path, "people_header")
        lines = code.splitlines()
        assert lines[0] == "# Code generated by modelbind from people_header.py. DO NOT EDIT."
        assert "from people_header import Person, Team" in lines
        assert "class PersonBinding(EntityBinding):" in lines
        assert "person_binding = PersonBinding()" in lines
        assert code.endswith(")\n")

    def test_output_is_deterministic(self, tmp_path):
        _, plan, code = _generate(tmp_path, "people_det")
        assert generate_binding(plan) == code

    def test_package_sources_use_relative_import(self, tmp_path):
        package = tmp_path / "pkg"
        package.mkdir()
        (package / "__init__.py").write_text("", encoding="utf-8")
        _, plan, code = _generate(package, "users", "@entity\nclass User:\n    id: int = 0\n")
        assert plan.module == ".users"
        assert "from .users import User" in code

    def test_ids_are_literal(self, tmp_path):
        descriptor, _, code = _generate(tmp_path, "people_ids")
        person = descriptor.entities[0]
        assert f"    id = IdUid(1, {person.id.uid})" in code
        name = person.properties[1]
        assert f"PropertyFlags.INDEXED, index_id=IdUid(1, {name.index_id.uid})" in code
        assert "(1, PropertyType.LONG, obj.id)," in code

    def test_instance_name(self):
        assert binding_instance_name("Person") == "person_binding"
        assert binding_instance_name("OrderLine") == "order_line_binding"

    def test_entity_without_id_is_internal_error(self):
        plan = BindingPlan(
            source="x.py",
            module="x",
            entities=[
                PlannedEntity(
                    name="Broken",
                    id=None,
                    last_property_id=IdUid(1, 2),
                    properties=[PlannedProperty("id", IdUid(1, 2), PropertyType.LONG, PropertyFlags.ID)],
                )
            ],
        )
        with pytest.raises(GeneratorInternalError):
            generate_binding(plan)

    def test_entity_without_id_property_is_internal_error(self):
        plan = BindingPlan(
            source="x.py",
            module="x",
            entities=[PlannedEntity(name="Broken", id=IdUid(1, 9), last_property_id=IdUid(0, 0))],
        )
        with pytest.raises(GeneratorInternalError):
            generate_binding(plan)

    def test_empty_plan(self):
        code = generate_binding(BindingPlan(source="empty.py", module="empty"))
        assert "BINDINGS = ()" in code
        assert "from empty import" not in code


class TestGeneratedModule:
    def test_flatten_and_load(self, tmp_path, monkeypatch):
        _generate(tmp_path, "people_rt")
        source = _import(monkeypatch, tmp_path, "people_rt")
        bindings = _import(monkeypatch, tmp_path, "people_rt_mb")

        person = source.Person()
        person.id = 5
        person.name = "Ann"
        person.age = 41
        person.score = 2.5
        person.active = True
        person.born = datetime(1983, 4, 5, 6, 7, 8, 9000, tzinfo=timezone.utc)
        person.tags = ["a", "b"]
        person.avatar = b"\x00\x01"
        person.nickname = None
        person.team = 3

        loaded = bindings.person_binding.load(bindings.person_binding.flatten(person))
        assert isinstance(loaded, source.Person)
        for attr in ("id", "name", "age", "score", "active", "born", "tags", "avatar", "nickname", "team"):
            assert getattr(loaded, attr) == getattr(person, attr), attr
        assert loaded.friends == []

    def test_load_defaults_for_missing_fields(self, tmp_path, monkeypatch):
        _generate(tmp_path, "people_defaults")
        bindings = _import(monkeypatch, tmp_path, "people_defaults_mb")
        loaded = bindings.person_binding.load(b"")
        assert loaded.id == 0
        assert loaded.name == ""
        assert loaded.born is None
        assert loaded.tags == []
        assert loaded.avatar == b""

    def test_get_and_set_id(self, tmp_path, monkeypatch):
        _generate(tmp_path, "people_ids_rt")
        source = _import(monkeypatch, tmp_path, "people_ids_rt")
        bindings = _import(monkeypatch, tmp_path, "people_ids_rt_mb")
        team = source.Team()
        bindings.team_binding.set_id(team, 12)
        assert bindings.team_binding.get_id(team) == 12

    def test_add_to_model(self, tmp_path, monkeypatch):
        descriptor, _, _ = _generate(tmp_path, "people_model")
        bindings = _import(monkeypatch, tmp_path, "people_model_mb")
        builder = ModelBuilder()
        for binding in bindings.BINDINGS:
            binding.add_to_model(builder)
        person, team = builder.entities
        assert person["name"] == "Person"
        assert person["id"] == str(descriptor.entities[0].id)
        team_prop = person["properties"][9]
        assert team_prop["name"] == "team"
        assert team_prop["relationTarget"] == "Team"
        assert person["relations"][0]["targetId"] == person["id"]
        assert team["lastPropertyId"] == str(descriptor.entities[1].last_property_id)

    def test_bindings_match_compact_schema(self, tmp_path, monkeypatch):
        descriptor, _, _ = _generate(tmp_path, "people_compat")
        bindings = _import(monkeypatch, tmp_path, "people_compat_mb")
        assert binding_issues(compact_document(descriptor), bindings.BINDINGS) == []

    def test_stale_bindings_are_reported(self, tmp_path, monkeypatch):
        descriptor, _, _ = _generate(tmp_path, "people_stale")
        bindings = _import(monkeypatch, tmp_path, "people_stale_mb")
        evolved_source = PEOPLE.replace('    title: str = ""\n', '    title: str = ""\n    motto: str = ""\n')
        evolved, _ = reconcile(
            parse_file(str(_write(tmp_path, "people_stale.py", evolved_source))),
            descriptor,
            UidSource.seeded(12),
        )
        codes = [issue.code for issue in binding_issues(compact_document(evolved), bindings.BINDINGS)]
        assert codes == ["STALE_BINDING"]

    def test_tampered_compact_schema(self, tmp_path, monkeypatch):
        descriptor, _, _ = _generate(tmp_path, "people_tampered")
        bindings = _import(monkeypatch, tmp_path, "people_tampered_mb")
        compact = compact_document(descriptor)
        compact["entities"][1]["properties"][1]["type"] = PropertyType.LONG
        codes = [issue.code for issue in binding_issues(compact, bindings.BINDINGS)]
        assert codes == ["FINGERPRINT_MISMATCH", "PROPERTY_MISMATCH"]
