from pathlib import Path
from typing import List

from mb_core.errors import GeneratorInternalError
from mb_core.model import (
    EMPTY_ID,
    INDEX_FLAGS,
    PROPERTY_TYPE_NAMES,
    BindingPlan,
    IdUid,
    PlannedEntity,
    PlannedProperty,
    PropertyFlags,
    PropertyType,
    flag_names,
)

HEADER = "# Code generated by modelbind from {source}. DO NOT EDIT."

_ZERO_VALUES = {
    PropertyType.BOOL: "False",
    PropertyType.BYTE: "0",
    PropertyType.SHORT: "0",
    PropertyType.CHAR: "0",
    PropertyType.INT: "0",
    PropertyType.LONG: "0",
    PropertyType.FLOAT: "0.0",
    PropertyType.DOUBLE: "0.0",
    PropertyType.STRING: '""',
    PropertyType.DATE: "None",
    PropertyType.RELATION: "0",
    PropertyType.BYTE_VECTOR: 'b""',
    PropertyType.STRING_VECTOR: "[]",
}


def _to_snake(name: str) -> str:
    out: List[str] = []
    for idx, char in enumerate(name):
        if char.isupper() and idx > 0 and (not name[idx - 1].isupper()):
            out.append("_")
        out.append(char.lower())
    return "".join(out)


def binding_instance_name(entity_name: str) -> str:
    return f"{_to_snake(entity_name)}_binding"


def _id(value: IdUid) -> str:
    return f"IdUid({value.id}, {value.uid})"


def _type(prop_type: int) -> str:
    return f"PropertyType.{PROPERTY_TYPE_NAMES[prop_type]}"


def _flags(flags: int) -> str:
    names = flag_names(flags)
    if not names:
        return "0"
    return " | ".join(f"PropertyFlags.{name}" for name in names)


def _check_entity(entity: PlannedEntity) -> None:
    if entity.id is None or entity.id.id == 0 or entity.id.uid == 0:
        raise GeneratorInternalError(f"entity {entity.name} reached the emitter without an id")
    if entity.id_property is None:
        raise GeneratorInternalError(f"entity {entity.name} has no id property")
    for prop in entity.properties:
        if prop.id.id == 0 or prop.id.uid == 0:
            raise GeneratorInternalError(f"property {entity.name}.{prop.name} has no id")
        if prop.id.id > entity.last_property_id.id:
            raise GeneratorInternalError(f"property {entity.name}.{prop.name} id exceeds lastPropertyId")
        if bool(prop.flags & INDEX_FLAGS) != (prop.index_id is not None):
            raise GeneratorInternalError(f"property {entity.name}.{prop.name} index flags and index id disagree")
    for rel in entity.relations:
        if rel.id.id == 0 or rel.target_id == EMPTY_ID:
            raise GeneratorInternalError(f"relation {entity.name}.{rel.name} is not resolved")


def _property_spec(prop: PlannedProperty) -> str:
    args = [f'"{prop.name}"', _id(prop.id), _type(prop.type), _flags(prop.flags)]
    if prop.index_id is not None:
        args.append(f"index_id={_id(prop.index_id)}")
    if prop.relation_target is not None:
        args.append(f'relation_target="{prop.relation_target}"')
    return f"PropertySpec({', '.join(args)})"


def _render_entity(entity: PlannedEntity) -> List[str]:
    cls = entity.name
    id_prop = entity.id_property
    lines = [
        f"class {cls}Binding(EntityBinding):",
        f"    entity_class = {cls}",
        f'    name = "{cls}"',
        f"    id = {_id(entity.id)}",
        f"    last_property_id = {_id(entity.last_property_id)}",
        f'    id_property = "{id_prop.name}"',
        "    properties = (",
    ]
    lines += [f"        {_property_spec(prop)}," for prop in entity.properties]
    lines.append("    )")
    if entity.relations:
        lines.append("    relations = (")
        lines += [
            f'        RelationSpec("{rel.name}", {_id(rel.id)}, {_id(rel.target_id)}),'
            for rel in entity.relations
        ]
        lines.append("    )")
    else:
        lines.append("    relations = ()")

    lines += [
        "",
        "    def add_to_model(self, model: ModelBuilder) -> None:",
        f'        model.entity("{cls}", {_id(entity.id)})',
    ]
    for prop in entity.properties:
        lines.append(f'        model.property("{prop.name}", {_type(prop.type)}, {_flags(prop.flags)}, {_id(prop.id)})')
        if prop.relation_target is not None:
            lines.append(f'        model.property_relation("{prop.relation_target}", {_id(prop.index_id)})')
        elif prop.index_id is not None:
            lines.append(f"        model.property_index({_id(prop.index_id)})")
    for rel in entity.relations:
        lines.append(f'        model.relation("{rel.name}", {_id(rel.id)}, {_id(rel.target_id)})')
    lines.append(f"        model.entity_last_property_id({_id(entity.last_property_id)})")

    lines += [
        "",
        f"    def flatten(self, obj: {cls}) -> bytes:",
        "        return encode_record((",
    ]
    lines += [f"            ({prop.id.id}, {_type(prop.type)}, obj.{prop.name})," for prop in entity.properties]
    lines.append("        ))")

    lines += [
        "",
        f"    def load(self, data: bytes) -> {cls}:",
        "        fields = decode_record(data)",
        f"        obj = {cls}.__new__({cls})",
    ]
    for prop in entity.properties:
        default = "None" if prop.flags & PropertyFlags.NULLABLE else _ZERO_VALUES[prop.type]
        lines.append(f"        obj.{prop.name} = fields.get({prop.id.id}, {default})")
    for rel in entity.relations:
        lines.append(f"        obj.{rel.name} = []")
    lines.append("        return obj")
    return lines


def generate_binding(plan: BindingPlan) -> str:
    """Render the binding module for one source file.

    Output depends only on ``plan``: entities and properties appear in
    declaration order and nothing time- or host-dependent is embedded.
    """
    for entity in plan.entities:
        _check_entity(entity)

    source_name = Path(plan.source).name
    lines = [
        HEADER.format(source=source_name),
        "",
        "from mb_core.binding import (",
        "    EntityBinding,",
        "    IdUid,",
        "    ModelBuilder,",
        "    PropertyFlags,",
        "    PropertySpec,",
        "    PropertyType,",
        "    RelationSpec,",
        "    decode_record,",
        "    encode_record,",
        ")",
    ]
    if plan.entities:
        names = ", ".join(entity.name for entity in plan.entities)
        lines += ["", f"from {plan.module} import {names}"]

    for entity in plan.entities:
        lines += ["", ""]
        lines += _render_entity(entity)
        lines += ["", "", f"{binding_instance_name(entity.name)} = {entity.name}Binding()"]

    instances = [binding_instance_name(entity.name) for entity in plan.entities]
    lines += ["", ""]
    if instances:
        lines.append("BINDINGS = (")
        lines += [f"    {name}," for name in instances]
        lines.append(")")
    else:
        lines.append("BINDINGS = ()")
    return "\n".join(lines) + "\n"
