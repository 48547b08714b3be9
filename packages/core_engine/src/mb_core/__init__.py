from mb_core.annotations import entity, prop, relation
from mb_core.compat import binding_issues, load_compact
from mb_core.config import GeneratorConfig, load_config
from mb_core.diffing import descriptor_diff
from mb_core.errors import (
    CorruptDescriptorError,
    GeneratorInternalError,
    ModelBindError,
    ReconciliationError,
    SchemaDeclarationError,
)
from mb_core.generators import generate_binding
from mb_core.parser import parse_file, parse_source
from mb_core.pipeline import (
    GenerationContext,
    GenerationResult,
    binding_file,
    check,
    model_file,
    model_info_file,
    process,
    process_batch,
    source_files,
)
from mb_core.reconcile import reconcile
from mb_core.schema import load_schema, schema_issues
from mb_core.store import load, save
from mb_core.uids import UidSource

# the four pipeline stages under their contract names
parse = parse_file
emit = generate_binding

__all__ = [
    "binding_file",
    "binding_issues",
    "check",
    "CorruptDescriptorError",
    "descriptor_diff",
    "emit",
    "entity",
    "GenerationContext",
    "GenerationResult",
    "generate_binding",
    "GeneratorConfig",
    "GeneratorInternalError",
    "load",
    "load_compact",
    "load_config",
    "load_schema",
    "model_file",
    "model_info_file",
    "ModelBindError",
    "parse",
    "parse_file",
    "parse_source",
    "process",
    "process_batch",
    "prop",
    "reconcile",
    "ReconciliationError",
    "relation",
    "save",
    "schema_issues",
    "SchemaDeclarationError",
    "source_files",
    "UidSource",
]
