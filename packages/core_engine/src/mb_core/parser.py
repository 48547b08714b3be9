import ast
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from mb_core.annotations import ENTITY_OPTIONS, PROP_OPTIONS, RELATION_OPTIONS
from mb_core.errors import SchemaDeclarationError
from mb_core.model import (
    NEW_UID,
    CandidateEntity,
    CandidateModel,
    CandidateProperty,
    CandidateRelation,
    ExplicitUid,
    PropertyFlags,
    PropertyType,
)
from mb_core.uids import MAX_UID

logger = logging.getLogger(__name__)

_BASE_TYPES = {
    "bool": PropertyType.BOOL,
    "int": PropertyType.LONG,
    "float": PropertyType.DOUBLE,
    "str": PropertyType.STRING,
    "bytes": PropertyType.BYTE_VECTOR,
    "datetime": PropertyType.DATE,
    "List[str]": PropertyType.STRING_VECTOR,
}

# explicit ``type=`` name -> (storage type, annotation kinds it may be applied to)
_TYPE_OVERRIDES: Dict[str, Tuple[int, Set[str]]] = {
    "bool": (PropertyType.BOOL, {"bool"}),
    "byte": (PropertyType.BYTE, {"int"}),
    "short": (PropertyType.SHORT, {"int"}),
    "char": (PropertyType.CHAR, {"int"}),
    "int": (PropertyType.INT, {"int"}),
    "long": (PropertyType.LONG, {"int"}),
    "float": (PropertyType.FLOAT, {"float"}),
    "double": (PropertyType.DOUBLE, {"float"}),
    "string": (PropertyType.STRING, {"str"}),
    "date": (PropertyType.DATE, {"datetime"}),
    "bytes": (PropertyType.BYTE_VECTOR, {"bytes"}),
    "strings": (PropertyType.STRING_VECTOR, {"List[str]"}),
}

_INDEXABLE = {
    PropertyType.BOOL,
    PropertyType.BYTE,
    PropertyType.SHORT,
    PropertyType.CHAR,
    PropertyType.INT,
    PropertyType.LONG,
    PropertyType.STRING,
    PropertyType.DATE,
    PropertyType.RELATION,
}

_LIST_NAMES = {"List", "list", "Sequence"}
_UNION_NAMES = {"Union"}
_OPTIONAL_NAMES = {"Optional"}


def _dotted_tail(node: ast.AST) -> Optional[str]:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    return None


def _is_none(node: ast.AST) -> bool:
    return isinstance(node, ast.Constant) and node.value is None


def _resolve_annotation(node: ast.AST) -> Tuple[str, bool]:
    """Reduce an annotation to ``(kind, nullable)``.

    ``kind`` is a base type name (``int``, ``str`` ...), ``List[<kind>]`` or the
    unparsed annotation when nothing more specific applies.
    """
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        try:
            inner = ast.parse(node.value, mode="eval").body
        except SyntaxError:
            return node.value, False
        return _resolve_annotation(inner)

    name = _dotted_tail(node)
    if name is not None:
        return name, False

    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
        return _resolve_union(_flatten_bitor(node), node)

    if isinstance(node, ast.Subscript):
        head = _dotted_tail(node.value)
        args = node.slice
        if head in _OPTIONAL_NAMES:
            kind, _ = _resolve_annotation(args)
            return kind, True
        if head in _UNION_NAMES:
            elts = list(args.elts) if isinstance(args, ast.Tuple) else [args]
            return _resolve_union(elts, node)
        if head in _LIST_NAMES:
            kind, _ = _resolve_annotation(args)
            return f"List[{kind}]", False
        if head == "ClassVar":
            return "ClassVar", False

    return ast.unparse(node), False


def _flatten_bitor(node: ast.AST) -> List[ast.AST]:
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
        return _flatten_bitor(node.left) + _flatten_bitor(node.right)
    return [node]


def _resolve_union(members: List[ast.AST], node: ast.AST) -> Tuple[str, bool]:
    concrete = [member for member in members if not _is_none(member)]
    if len(concrete) != 1:
        return ast.unparse(node), False
    kind, _ = _resolve_annotation(concrete[0])
    return kind, len(concrete) < len(members)


class _FileParser:
    def __init__(self, path: str, text: str) -> None:
        self.path = path
        self.text = text

    def fail(self, message: str, line: Optional[int] = None, declaration: Optional[str] = None) -> SchemaDeclarationError:
        return SchemaDeclarationError(message, path=self.path, line=line, declaration=declaration)

    def parse(self) -> CandidateModel:
        try:
            tree = ast.parse(self.text, filename=self.path)
        except SyntaxError as exc:
            raise self.fail(f"invalid Python syntax: {exc.msg}", line=exc.lineno) from exc

        model = CandidateModel(source=self.path)
        seen_names: Dict[str, int] = {}
        for node in tree.body:
            if not isinstance(node, ast.ClassDef):
                continue
            options = self._entity_options(node)
            if options is None:
                continue
            if node.name in seen_names:
                raise self.fail(
                    f"entity declared twice (first declaration on line {seen_names[node.name]})",
                    line=node.lineno,
                    declaration=node.name,
                )
            seen_names[node.name] = node.lineno
            model.entities.append(self._entity(node, options))

        self._check_member_uids(model)
        logger.debug("Parsed %d entities from %s", len(model.entities), self.path)
        return model

    # -- entity ---------------------------------------------------------------

    def _entity_options(self, node: ast.ClassDef) -> Optional[Dict[str, Any]]:
        for decorator in node.decorator_list:
            if isinstance(decorator, ast.Call):
                if _dotted_tail(decorator.func) == "entity":
                    return self._call_options(decorator, ENTITY_OPTIONS, node.name, node.lineno)
            elif _dotted_tail(decorator) == "entity":
                return {}
        return None

    def _entity(self, node: ast.ClassDef, options: Dict[str, Any]) -> CandidateEntity:
        entity = CandidateEntity(
            name=node.name,
            uid=self._uid(options.get("uid"), node.name, node.lineno),
            line=node.lineno,
        )
        members: Dict[str, int] = {}
        explicit_ids: List[CandidateProperty] = []

        for stmt in node.body:
            if not isinstance(stmt, ast.AnnAssign) or not isinstance(stmt.target, ast.Name):
                continue
            name = stmt.target.id
            if name.startswith("_"):
                continue
            declaration = f"{node.name}.{name}"
            if name in members:
                raise self.fail(
                    f"member declared twice (first declaration on line {members[name]})",
                    line=stmt.lineno,
                    declaration=declaration,
                )

            call_name = None
            call_options: Dict[str, Any] = {}
            if isinstance(stmt.value, ast.Call):
                call_name = _dotted_tail(stmt.value.func)
                if call_name == "prop":
                    call_options = self._call_options(stmt.value, PROP_OPTIONS, declaration, stmt.lineno)
                elif call_name == "relation":
                    call_options = self._call_options(
                        stmt.value, RELATION_OPTIONS, declaration, stmt.lineno, positional="target"
                    )

            if call_options.get("transient"):
                continue
            kind, nullable = _resolve_annotation(stmt.annotation)
            if kind == "ClassVar":
                continue
            members[name] = stmt.lineno

            if call_name == "relation":
                entity.relations.append(self._relation(name, kind, call_options, declaration, stmt.lineno))
                continue

            prop = self._property(name, kind, nullable, call_options, declaration, stmt.lineno)
            if call_options.get("id"):
                explicit_ids.append(prop)
            entity.properties.append(prop)

        self._assign_id_property(entity, explicit_ids)
        return entity

    def _assign_id_property(self, entity: CandidateEntity, explicit_ids: List[CandidateProperty]) -> None:
        if len(explicit_ids) > 1:
            names = ", ".join(prop.name for prop in explicit_ids)
            raise self.fail(f"multiple id properties: {names}", line=entity.line, declaration=entity.name)
        if explicit_ids:
            id_prop = explicit_ids[0]
        else:
            id_prop = next((prop for prop in entity.properties if prop.name == "id"), None)
        if id_prop is None:
            raise self.fail(
                "no id property; declare 'id: int' or mark an int attribute with prop(id=True)",
                line=entity.line,
                declaration=entity.name,
            )

        declaration = f"{entity.name}.{id_prop.name}"
        if id_prop.type != PropertyType.LONG or id_prop.relation_target:
            raise self.fail("id property must be a plain int", line=id_prop.line, declaration=declaration)
        if id_prop.flags & PropertyFlags.NULLABLE:
            raise self.fail("id property must not be Optional", line=id_prop.line, declaration=declaration)
        if id_prop.has_index:
            raise self.fail("id property is always indexed, remove the index option", line=id_prop.line, declaration=declaration)
        id_prop.flags |= PropertyFlags.ID

    # -- members --------------------------------------------------------------

    def _property(
        self,
        name: str,
        kind: str,
        nullable: bool,
        options: Dict[str, Any],
        declaration: str,
        line: int,
    ) -> CandidateProperty:
        link = options.get("link")
        override = options.get("type")

        if link is not None:
            if not isinstance(link, str) or not link:
                raise self.fail("link must name the target entity", line=line, declaration=declaration)
            if kind != "int" or override is not None:
                raise self.fail("link properties hold the target id and must be a plain int", line=line, declaration=declaration)
            prop_type = PropertyType.RELATION
        elif override is not None:
            if override not in _TYPE_OVERRIDES:
                allowed = ", ".join(sorted(_TYPE_OVERRIDES))
                raise self.fail(f"unknown type {override!r}, use one of: {allowed}", line=line, declaration=declaration)
            prop_type, kinds = _TYPE_OVERRIDES[override]
            if kind not in kinds:
                raise self.fail(f"type {override!r} cannot store a {kind} attribute", line=line, declaration=declaration)
        elif kind in _BASE_TYPES:
            prop_type = _BASE_TYPES[kind]
        else:
            raise self.fail(f"unsupported type {kind}", line=line, declaration=declaration)

        flags = 0
        if nullable:
            flags |= PropertyFlags.NULLABLE
        flags |= self._index_flags(prop_type, options, declaration, line)
        if link is not None:
            flags |= PropertyFlags.INDEXED

        return CandidateProperty(
            name=name,
            type=prop_type,
            flags=flags,
            uid=self._uid(options.get("uid"), declaration, line),
            relation_target=link,
            line=line,
        )

    def _index_flags(self, prop_type: int, options: Dict[str, Any], declaration: str, line: int) -> int:
        index = options.get("index", False)
        unique = options.get("unique", False)
        if not isinstance(unique, bool):
            raise self.fail("unique must be True or False", line=line, declaration=declaration)
        if index in (False, None) and not unique:
            return 0
        if prop_type not in _INDEXABLE:
            raise self.fail("this property type cannot be indexed", line=line, declaration=declaration)

        if index is True or index == "value" or (index in (False, None) and unique):
            flags = PropertyFlags.INDEXED
        elif index == "hash":
            if prop_type != PropertyType.STRING:
                raise self.fail("hash indexes are only supported on str properties", line=line, declaration=declaration)
            flags = PropertyFlags.INDEX_HASH
        else:
            raise self.fail(f"index must be True, 'value' or 'hash', got {index!r}", line=line, declaration=declaration)

        if unique:
            flags |= PropertyFlags.UNIQUE
        return flags

    def _relation(self, name: str, kind: str, options: Dict[str, Any], declaration: str, line: int) -> CandidateRelation:
        target = options.get("target")
        if target is None and kind.startswith("List[") and kind.endswith("]"):
            target = kind[len("List["):-1]
        if not isinstance(target, str) or not target or not target.isidentifier():
            raise self.fail("relation target must be an entity name", line=line, declaration=declaration)
        if not kind.startswith("List["):
            raise self.fail("to-many relations must be annotated as List[...]", line=line, declaration=declaration)
        return CandidateRelation(
            name=name,
            target=target,
            uid=self._uid(options.get("uid"), declaration, line),
            line=line,
        )

    # -- helpers --------------------------------------------------------------

    def _call_options(
        self,
        call: ast.Call,
        allowed: Tuple[str, ...],
        declaration: str,
        line: int,
        positional: Optional[str] = None,
    ) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        if call.args:
            if positional is not None:
                options[positional] = self._literal(call.args[0], positional, declaration, line)
            elif len(call.args) > 1:
                raise self.fail("only the default value may be passed positionally", line=line, declaration=declaration)
        for keyword in call.keywords:
            if keyword.arg is None:
                raise self.fail("**kwargs are not supported in model annotations", line=line, declaration=declaration)
            if keyword.arg not in allowed:
                raise self.fail(
                    f"unknown option {keyword.arg!r}, use one of: {', '.join(allowed)}",
                    line=line,
                    declaration=declaration,
                )
            if keyword.arg == "default":
                continue
            options[keyword.arg] = self._literal(keyword.value, keyword.arg, declaration, line)
        return options

    def _literal(self, node: ast.AST, option: str, declaration: str, line: int) -> Any:
        try:
            return ast.literal_eval(node)
        except (ValueError, TypeError, SyntaxError) as exc:
            raise self.fail(f"value of {option!r} must be a literal", line=line, declaration=declaration) from exc

    def _uid(self, value: Any, declaration: str, line: int) -> ExplicitUid:
        if value is None or value == NEW_UID:
            return value
        if isinstance(value, bool) or not isinstance(value, int) or not 0 < value <= MAX_UID:
            raise self.fail(
                f"uid must be a positive 63-bit integer or {NEW_UID!r}, got {value!r}",
                line=line,
                declaration=declaration,
            )
        return value

    def _check_member_uids(self, model: CandidateModel) -> None:
        claimed: Dict[int, str] = {}
        for entity in model.entities:
            members = [(prop.name, prop.uid, prop.line) for prop in entity.properties]
            members += [(rel.name, rel.uid, rel.line) for rel in entity.relations]
            for name, uid, line in members:
                if not isinstance(uid, int):
                    continue
                declaration = f"{entity.name}.{name}"
                if uid in claimed:
                    raise self.fail(f"uid {uid} is already claimed by {claimed[uid]}", line=line, declaration=declaration)
                claimed[uid] = declaration


def parse_source(text: str, path: str = "<string>") -> CandidateModel:
    return _FileParser(path, text).parse()


def parse_file(path: str) -> CandidateModel:
    source_path = Path(path)
    if not source_path.exists():
        raise FileNotFoundError(f"Source file not found: {path}")
    try:
        text = source_path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise SchemaDeclarationError(f"source is not valid UTF-8: {exc.reason} at byte {exc.start}", path=str(source_path)) from exc
    return parse_source(text, str(source_path))
