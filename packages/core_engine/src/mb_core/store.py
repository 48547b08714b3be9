"""Durable schema descriptor storage.

``load`` returns an empty descriptor when the file does not exist yet and
refuses (``CorruptDescriptorError``) anything that fails validation; there is
no auto-repair. ``save`` renders deterministically and replaces the
descriptor and its compact companion atomically.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from mb_core.canonical import descriptor_from_document, render_compact, render_descriptor
from mb_core.errors import CorruptDescriptorError
from mb_core.issues import Issue, error
from mb_core.model import MODEL_VERSION, SchemaDescriptor
from mb_core.schema import consistency_issues, load_schema, schema_issues

logger = logging.getLogger(__name__)

COMPACT_SUFFIX = ".compact.json"


def compact_path(model_info_path: str) -> str:
    path = Path(model_info_path)
    return str(path.with_name(path.stem + COMPACT_SUFFIX))


def descriptor_issues(document: Any, schema: Optional[Dict[str, Any]] = None) -> List[Issue]:
    if not isinstance(document, dict):
        return [error("DESCRIPTOR_NOT_OBJECT", "descriptor must be a JSON object at root")]
    issues = schema_issues(document, schema or load_schema())
    if issues:
        return issues
    minimum = document.get("modelVersionParserMinimum", document["modelVersion"])
    if minimum > MODEL_VERSION:
        return [
            error(
                "UNSUPPORTED_MODEL_VERSION",
                f"descriptor requires model version {minimum}, this generator supports {MODEL_VERSION}",
                "/modelVersionParserMinimum",
            )
        ]
    return consistency_issues(document)


def parse_descriptor(text: str, path: Optional[str] = None) -> SchemaDescriptor:
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CorruptDescriptorError(f"invalid JSON: {exc}", path=path) from exc

    issues = descriptor_issues(document)
    if issues:
        raise CorruptDescriptorError("descriptor failed validation", path=path, issues=issues)
    return descriptor_from_document(document)


def load(path: str) -> SchemaDescriptor:
    model_path = Path(path)
    if not model_path.exists():
        logger.info("No descriptor at %s, starting from an empty model", path)
        return SchemaDescriptor()
    return parse_descriptor(model_path.read_text(encoding="utf-8"), path=str(model_path))


def write_atomic(path: str, content: str) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def save(descriptor: SchemaDescriptor, path: str) -> None:
    # compact before descriptor; the descriptor is the source of truth
    write_atomic(compact_path(path), render_compact(descriptor))
    write_atomic(path, render_descriptor(descriptor))
    logger.info("Wrote descriptor %s (%d entities)", path, len(descriptor.entities))
