import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional, Sequence

from mb_core import (
    GeneratorConfig,
    ModelBindError,
    UidSource,
    descriptor_diff,
    load,
    load_config,
    process_batch,
    source_files,
)
from mb_core.config import ON_ERROR_CHOICES
from mb_core.issues import Issue, to_lines
from mb_core.store import descriptor_issues


def _print_issues(issues: List[Issue]) -> None:
    if not issues:
        print("No issues found.")
        return
    for line in to_lines(issues):
        print(line)


def _configure_logging(args: argparse.Namespace, config: GeneratorConfig) -> None:
    level = logging.DEBUG if getattr(args, "verbose", False) else getattr(logging, config.log_level)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _load_config(args: argparse.Namespace) -> GeneratorConfig:
    config = load_config(getattr(args, "config", None))
    _configure_logging(args, config)
    return config


def _expand_paths(paths: Sequence[str], config: GeneratorConfig) -> List[str]:
    files: List[str] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(source_files(str(path), suffix=config.binding_suffix, exclude=config.exclude))
        elif path.exists():
            files.append(str(path))
        else:
            raise FileNotFoundError(f"Source path not found: {raw}")
    return files


def _model_info(args: argparse.Namespace, config: GeneratorConfig) -> str:
    if args.model_info:
        return args.model_info
    first = Path(args.paths[0])
    directory = first if first.is_dir() else first.parent
    return str(directory / config.model_info)


def cmd_generate(args: argparse.Namespace) -> int:
    config = _load_config(args)
    files = _expand_paths(args.paths, config)
    uids = UidSource.seeded(args.uid_seed) if args.uid_seed is not None else None
    result = process_batch(
        files,
        _model_info(args, config),
        on_error=args.on_error or config.on_error,
        uids=uids,
        binding_suffix=config.binding_suffix,
        write=False,
    )
    written = result.write()
    for path in written:
        print(f"Wrote: {path}")
    if not written:
        print("Up to date.")
    for path in result.skipped:
        print(f"Skipped: {path}")
    return 1 if result.skipped else 0


def cmd_check(args: argparse.Namespace) -> int:
    config = _load_config(args)
    files = _expand_paths(args.paths, config)
    result = process_batch(
        files,
        _model_info(args, config),
        on_error=args.on_error or config.on_error,
        binding_suffix=config.binding_suffix,
        write=False,
    )
    for path in result.skipped:
        print(f"Skipped: {path}")
    stale = result.stale_files()
    if not stale:
        print("Generated files are up to date.")
        return 0
    print("Out of date:")
    for path in stale:
        print(f"- {path}")
    return 2


def cmd_validate(args: argparse.Namespace) -> int:
    _configure_logging(args, GeneratorConfig())
    path = Path(args.model_info)
    if not path.exists():
        raise FileNotFoundError(f"Descriptor not found: {args.model_info}")
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        print(f"ERROR: invalid JSON: {exc}")
        return 1
    issues = descriptor_issues(document)
    _print_issues(issues)
    return 1 if issues else 0


def cmd_diff(args: argparse.Namespace) -> int:
    _configure_logging(args, GeneratorConfig())
    diff = descriptor_diff(load(args.old), load(args.new))
    if args.output_json:
        print(json.dumps(diff, indent=2))
        return 0

    summary = diff["summary"]
    print(
        "Entities: {added} added, {retired} retired, {renamed} renamed, {changed} changed".format(
            added=summary["added_entities"],
            retired=summary["retired_entities"],
            renamed=summary["renamed_entities"],
            changed=summary["changed_entities"],
        )
    )
    for item in diff["renamed_entities"]:
        print(f"  renamed: {item['from']} -> {item['to']}")
    for change in diff["changed_entities"]:
        print(f"  {change['entity']}:")
        for name in change["added_properties"]:
            print(f"    + {name}")
        for name in change["retired_properties"]:
            print(f"    - {name}")
        for item in change["renamed_properties"]:
            print(f"    ~ {item['from']} -> {item['to']}")
    if diff["breaking_changes"]:
        print("Breaking changes:")
        for line in diff["breaking_changes"]:
            print(f"- {line}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mb", description="modelbind code generator")
    sub = parser.add_subparsers(dest="command", required=True)

    generate_parser = sub.add_parser("generate", help="Generate bindings and update the model descriptor")
    generate_parser.add_argument("paths", nargs="+", help="Source files or directories")
    generate_parser.add_argument("--model-info", help="Descriptor path (default: <dir>/model-info.json)")
    generate_parser.add_argument("--on-error", choices=ON_ERROR_CHOICES, help="Stop the batch or skip failing files")
    generate_parser.add_argument("--uid-seed", type=int, help="Seed UID generation for reproducible fixtures")
    generate_parser.add_argument("--config", help="Path to modelbind.yaml")
    generate_parser.add_argument("-v", "--verbose", action="store_true", help="Log every assigned identifier")
    generate_parser.set_defaults(func=cmd_generate)

    check_parser = sub.add_parser("check", help="Exit 2 if generated files are out of date")
    check_parser.add_argument("paths", nargs="+", help="Source files or directories")
    check_parser.add_argument("--model-info", help="Descriptor path (default: <dir>/model-info.json)")
    check_parser.add_argument("--on-error", choices=ON_ERROR_CHOICES, help="Stop the batch or skip failing files")
    check_parser.add_argument("--config", help="Path to modelbind.yaml")
    check_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    check_parser.set_defaults(func=cmd_check)

    validate_parser = sub.add_parser("validate", help="Validate a model descriptor")
    validate_parser.add_argument("model_info", help="Path to model-info.json")
    validate_parser.set_defaults(func=cmd_validate)

    diff_parser = sub.add_parser("diff", help="Compare two model descriptors")
    diff_parser.add_argument("old", help="Old descriptor path")
    diff_parser.add_argument("new", help="New descriptor path")
    diff_parser.add_argument("--output-json", action="store_true", help="Print the diff as JSON")
    diff_parser.set_defaults(func=cmd_diff)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except (ModelBindError, FileNotFoundError, ValueError) as exc:
        print(f"ERROR: {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
