"""
Command-line interface for appprof.

Notes
-----
The CLI is intentionally thin. It parses arguments and delegates to the
`ProfileManager` facade.

Exit codes
----------
- 0: success
- 1: an apply finished with errors, was cancelled, or was fatal
- 2: a domain error (printed as ``ERROR: ...``)
"""

from __future__ import annotations

import argparse
import io
import logging
from dataclasses import asdict
from pathlib import Path

from profile_engine.apply.results import Outcome, RunStatus
from profile_engine.data_models import ProfileState
from profile_engine.document import parse, serialize, validate
from profile_engine.errors import ProfileEngineError
from profile_engine.manager import ProfileManager
from profile_engine.operations import OperationRegistry
from profile_engine.paths_and_safety import SafetyViolationError, StorePaths, ensure_store_directories
from profile_engine.transfer import export_filename, suggest_profile_name


def build_parser() -> argparse.ArgumentParser:
    """
    Build and return the top-level argument parser.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser.
    """
    parser = argparse.ArgumentParser(
        prog="appprof",
        description="Define application profiles and toggle them on or off.",
    )
    parser.add_argument(
        "--data-root",
        type=Path,
        default=None,
        help="Override the data root (primarily for testing). If omitted, defaults are used.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    init_p = sub.add_parser("init", help="Create the data root folder structure")
    init_p.add_argument("--print-paths", action="store_true", help="Print resolved paths")

    list_p = sub.add_parser("list", help="List profiles with a short summary")
    list_p.add_argument("--filter", default="", help="Only show names containing this text")

    show_p = sub.add_parser("show", help="Print a profile document")
    show_p.add_argument("name")

    create_p = sub.add_parser("create", help="Create an empty profile")
    create_p.add_argument("name")
    create_p.add_argument(
        "--target",
        action="append",
        default=[],
        help="Target identifier (e.g., an application package name). Repeatable.",
    )

    validate_p = sub.add_parser("validate", help="Validate a profile document file")
    validate_p.add_argument("file", type=Path)

    apply_p = sub.add_parser("apply", help="Apply a profile and wait for the result")
    apply_p.add_argument("name")
    apply_p.add_argument("--state", required=True, choices=["on", "off"], type=str.lower)
    apply_p.add_argument(
        "--force",
        action="store_true",
        help="Break a provably stale run lock (same host, dead process).",
    )
    apply_p.add_argument(
        "--break-lock",
        action="store_true",
        help="Break an existing run lock even if it is not provably stale.",
    )
    apply_p.add_argument(
        "--details",
        action="store_true",
        help="Print per-operation outcomes for targets that did not succeed.",
    )

    clone_p = sub.add_parser("clone", help="Copy a profile under a new name")
    clone_p.add_argument("source")
    clone_p.add_argument("new_name")

    delete_p = sub.add_parser("delete", help="Delete a profile")
    delete_p.add_argument("name")

    import_p = sub.add_parser("import", help="Import a profile document (plain or .zst)")
    import_p.add_argument("file", type=Path)
    import_p.add_argument("--name", default=None, help="Profile name (default: derived from the file name)")

    export_p = sub.add_parser("export", help="Export a profile document")
    export_p.add_argument("name")
    export_p.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Output file or directory (default: ./<name>.am.json).",
    )
    export_p.add_argument(
        "--compress",
        action="store_true",
        help="Write a zstd-compressed document (default: the export_compression setting).",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """
    CLI entry point.

    Parameters
    ----------
    argv:
        Optional argument vector. If None, argparse uses sys.argv.

    Returns
    -------
    int
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command == "validate":
        return _cmd_validate(args.file)

    try:
        with ProfileManager(data_root=args.data_root) as manager:
            return _dispatch(manager, args)
    except (ProfileEngineError, SafetyViolationError, ValueError, OSError) as exc:
        print(f"ERROR: {exc}")
        return 2


def _dispatch(manager: ProfileManager, args: argparse.Namespace) -> int:
    if args.command == "init":
        ensure_store_directories(manager.paths)
        if args.print_paths:
            print(store_paths_as_text(manager.paths))
        return 0

    if args.command == "list":
        catalog = manager.refresh_catalog().filter(args.filter)
        texts = catalog.summary_texts()
        for name in catalog.names():
            print(f"{name}\t{texts[name]}")
        return 0

    if args.command == "show":
        print(serialize(manager.load_profile(args.name)).decode("utf-8"), end="")
        return 0

    if args.command == "create":
        profile = manager.create_profile(args.name, targets=args.target)
        print(f"Created profile: {profile.name}")
        return 0

    if args.command == "apply":
        return _cmd_apply(manager, args)

    if args.command == "clone":
        profile = manager.clone_profile(args.source, args.new_name)
        print(f"Cloned {args.source} -> {profile.name}")
        return 0

    if args.command == "delete":
        if manager.delete_profile(args.name):
            print(f"Deleted profile: {args.name}")
        else:
            print(f"Profile did not exist: {args.name}")
        return 0

    if args.command == "import":
        with args.file.open("rb") as handle:
            result = manager.import_profile(handle, args.name or suggest_profile_name(args.file))
        print(f"Imported profile: {result.profile.name}")
        for warning in result.warnings:
            print(f"WARNING: {warning.field}: {warning.reason}")
        return 0

    if args.command == "export":
        compress = manager.export_compression(args.compress or None)
        output = args.output or Path(export_filename(args.name, compress=compress))
        if output.is_dir():
            output = output / export_filename(args.name, compress=compress)
        buffer = io.BytesIO()
        manager.export_profile(args.name, buffer, compress=args.compress or None)
        output.write_bytes(buffer.getvalue())
        print(f"Exported profile: {output}")
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def _cmd_apply(manager: ProfileManager, args: argparse.Namespace) -> int:
    handle = manager.apply_profile(
        args.name,
        ProfileState.parse(args.state),
        force=args.force,
        break_lock=args.break_lock,
    )
    try:
        for snapshot in handle.progress():
            if not snapshot.status.is_terminal:
                print(f"[{snapshot.targets_completed}/{snapshot.targets_total}]")
    except KeyboardInterrupt:
        handle.cancel()
        print("Cancelling after the current target...")
    result = handle.wait()

    print(result.summary_line())
    if args.details:
        for target in result.outcomes.values():
            for op in target.operations:
                if op.outcome is not Outcome.SUCCESS:
                    print(f"  {target.target}: {op.kind} {op.outcome.value}: {op.message}")
    return 0 if result.status is RunStatus.COMPLETED else 1


def _cmd_validate(path: Path) -> int:
    try:
        profile = parse(path.read_bytes())
    except (ProfileEngineError, OSError) as exc:
        print(f"ERROR: {exc}")
        return 2
    issues = validate(profile, OperationRegistry.from_entry_points())
    for issue in issues:
        print(f"{issue.severity.value.upper()}: {issue.field}: {issue.reason}")
    if any(issue.is_error for issue in issues):
        return 2
    print(f"OK: {profile.name}")
    return 0


def store_paths_as_text(paths: StorePaths) -> str:
    """Render StorePaths as a readable multi-line string."""
    items = asdict(paths)
    return "\n".join(f"{key}: {items[key]}" for key in items)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":
    raise SystemExit(main())
