"""Batch driver: parse, reconcile and emit a set of source files.

A ``GenerationContext`` accumulates one descriptor across every file of a
batch. Files are merged one at a time in the caller's order; a file that
fails leaves the accumulated state exactly as it was. Retirement of
vanished entities, relation linking and all writes happen once, in
``finish``.
"""

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

from mb_core import store
from mb_core.canonical import render_compact, render_descriptor
from mb_core.errors import ModelBindError, ReconciliationError
from mb_core.generators import generate_binding
from mb_core.model import CandidateModel, SchemaDescriptor
from mb_core.parser import parse_file
from mb_core.reconcile import build_plan, link_relations, merge, module_name, retire_unclaimed
from mb_core.uids import UidSource

logger = logging.getLogger(__name__)

MODEL_INFO_FILE = "model-info.json"
BINDING_SUFFIX = "_mb"
ON_ERROR_CHOICES = ("stop", "skip")


def model_info_file(directory: str) -> str:
    return str(Path(directory) / MODEL_INFO_FILE)


def model_file(model_info_path: str) -> str:
    return store.compact_path(model_info_path)


def binding_file(source_file: str, suffix: str = BINDING_SUFFIX) -> str:
    path = Path(source_file)
    return str(path.with_name(f"{path.stem}{suffix}.py"))


def source_files(directory: str, suffix: str = BINDING_SUFFIX, exclude: Sequence[str] = ()) -> List[str]:
    """Python sources under ``directory``, sorted, minus generated bindings."""
    root = Path(directory)
    found: List[str] = []
    for path in sorted(root.rglob("*.py")):
        rel = path.relative_to(root).as_posix()
        if any(part.startswith(".") or part == "__pycache__" for part in path.relative_to(root).parts):
            continue
        if path.name == "__init__.py" or path.stem.endswith(suffix):
            continue
        if any(fnmatch.fnmatch(rel, pattern) for pattern in exclude):
            continue
        found.append(str(path))
    return found


def _read_text(path: str) -> Optional[str]:
    target = Path(path)
    if not target.exists():
        return None
    return target.read_text(encoding="utf-8")


@dataclass
class _Pending:
    source_file: str
    source: str
    module: str
    candidate: CandidateModel
    entity_uids: List[int] = field(default_factory=list)


@dataclass
class GenerationResult:
    model_info_file: str
    descriptor: SchemaDescriptor
    bindings: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    def outputs(self) -> Dict[str, str]:
        files = {
            model_file(self.model_info_file): render_compact(self.descriptor),
            self.model_info_file: render_descriptor(self.descriptor),
        }
        files.update(self.bindings)
        return files

    def stale_files(self) -> List[str]:
        return [path for path, content in self.outputs().items() if _read_text(path) != content]

    def write(self) -> List[str]:
        """Write every output whose content changed; descriptor files before bindings."""
        stale = self.stale_files()
        if self.model_info_file in stale or model_file(self.model_info_file) in stale:
            store.save(self.descriptor, self.model_info_file)
        for path, content in self.bindings.items():
            if path in stale:
                store.write_atomic(path, content)
                logger.info("Wrote binding %s", path)
        return stale


class GenerationContext:
    """Mutable state of one generation batch."""

    def __init__(
        self,
        model_info_path: str,
        uids: Optional[UidSource] = None,
        binding_suffix: str = BINDING_SUFFIX,
        on_error: str = "stop",
    ) -> None:
        if on_error not in ON_ERROR_CHOICES:
            raise ValueError(f"on_error must be one of {', '.join(ON_ERROR_CHOICES)}, got {on_error!r}")
        self.model_info_file = str(model_info_path)
        self.base_dir = Path(self.model_info_file).resolve().parent
        self.initial = store.load(self.model_info_file)
        self.descriptor = self.initial
        self.uids = uids or UidSource()
        self.binding_suffix = binding_suffix
        self.on_error = on_error
        self.claimed: Set[int] = set()
        self.sources: Set[str] = set()
        self.pending: List[_Pending] = []
        self.skipped: List[str] = []

    def source_key(self, source_file: str) -> str:
        path = Path(source_file).resolve()
        return Path(os.path.relpath(path, self.base_dir)).as_posix()

    def add(self, source_file: str) -> bool:
        """Parse and merge one file; returns False when it was skipped."""
        try:
            candidate = parse_file(source_file)
            self._merge(source_file, candidate)
        except (ModelBindError, OSError) as exc:
            if self.on_error == "stop":
                raise
            logger.error("Skipping %s: %s", source_file, exc)
            self.skipped.append(source_file)
            return False
        return True

    def _merge(self, source_file: str, candidate: CandidateModel) -> None:
        source = self.source_key(source_file)
        if source in self.sources:
            raise ReconciliationError(f"source file {source} was already processed in this run")
        result = merge(
            candidate,
            self.descriptor,
            self.uids,
            source=source,
            claimed=self.claimed,
            retire_missing=False,
        )
        self.descriptor = result.descriptor
        self.claimed.update(result.entity_uids)
        self.sources.add(source)
        self.pending.append(
            _Pending(
                source_file=source_file,
                source=source,
                module=module_name(source_file),
                candidate=candidate,
                entity_uids=result.entity_uids,
            )
        )

    def _replay(self, kept: List[_Pending]) -> None:
        self.descriptor = self.initial
        self.claimed = set()
        self.sources = set()
        self.pending = []
        for item in kept:
            self._merge(item.source_file, item.candidate)

    def _missing_sources(self) -> Set[str]:
        missing = set()
        for entity in self.descriptor.live_entities():
            if entity.source and entity.source not in self.sources:
                if not (self.base_dir / entity.source).exists():
                    missing.add(entity.source)
        return missing

    def _settle(self) -> SchemaDescriptor:
        while True:
            descriptor = retire_unclaimed(self.descriptor, self.claimed, self.sources, self._missing_sources())
            failed: List[_Pending] = []
            for item in self.pending:
                try:
                    link_relations(descriptor, [(item.candidate, item.entity_uids)])
                except ReconciliationError as exc:
                    if self.on_error == "stop":
                        raise
                    logger.error("Skipping %s: %s", item.source_file, exc)
                    failed.append(item)
            if not failed:
                return descriptor
            self.skipped.extend(item.source_file for item in failed)
            self._replay([item for item in self.pending if item not in failed])

    def finish(self) -> GenerationResult:
        descriptor = self._settle()
        result = GenerationResult(
            model_info_file=self.model_info_file,
            descriptor=descriptor,
            skipped=list(self.skipped),
        )
        for item in self.pending:
            target = binding_file(item.source_file, self.binding_suffix)
            if not item.candidate.entities and not Path(target).exists():
                continue
            plan = build_plan(item.candidate, descriptor, item.entity_uids, item.module)
            result.bindings[target] = generate_binding(plan)
        return result


def process_batch(
    source_files: Iterable[str],
    model_info_file: str,
    on_error: str = "stop",
    uids: Optional[UidSource] = None,
    binding_suffix: str = BINDING_SUFFIX,
    write: bool = True,
) -> GenerationResult:
    context = GenerationContext(model_info_file, uids=uids, binding_suffix=binding_suffix, on_error=on_error)
    for source_file in source_files:
        context.add(source_file)
    result = context.finish()
    if write:
        result.write()
    return result


def process(source_file: str, model_info_file: str, uids: Optional[UidSource] = None) -> GenerationResult:
    """Generate the binding for one source file and update the descriptor."""
    return process_batch([source_file], model_info_file, uids=uids)


def check(
    source_files: Iterable[str],
    model_info_file: str,
    binding_suffix: str = BINDING_SUFFIX,
    on_error: str = "stop",
) -> List[str]:
    """Dry run; the outputs that a real run would rewrite."""
    result = process_batch(source_files, model_info_file, on_error=on_error, binding_suffix=binding_suffix, write=False)
    return result.stale_files()
