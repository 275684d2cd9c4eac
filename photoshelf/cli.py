from __future__ import annotations

import argparse
import subprocess
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from .core.config import Settings, get_settings
from .core.errors import StructuralError
from .core.logging import configure_logging, level_from_name
from .core.storage import get_storage
from .ingest.catalog_schema import SchemaPath, export_schema
from .services.maintenance import CACHE_PREFIXES, clear_cache, prune
from .services.pipeline import IngestPipeline, RunSummary
from .services.publisher import CatalogPublisher

console = Console()

EXIT_OK = 0
EXIT_CHECK_FAILED = 1
EXIT_STRUCTURAL = 2


def main(argv: Optional[list[str]] = None) -> None:
    """The main entry point for the CLI.

    Args:
        argv: The command-line arguments.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(EXIT_CHECK_FAILED)

    try:
        settings = get_settings()
        configure_logging(level_from_name(args.log_level or settings.log_level), pretty=args.pretty)
        code = args.func(args, settings)
    except StructuralError as exc:
        console.print(f"[red]{type(exc).__name__}:[/] {exc}")
        sys.exit(EXIT_STRUCTURAL)
    sys.exit(code or EXIT_OK)


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI.

    Returns:
        The argument parser.
    """
    parser = argparse.ArgumentParser(prog="photoshelf", description="Ingest a photo tree into object storage")
    parser.add_argument("--log-level", default=None, help="debug, info, warning or error")
    parser.add_argument("--pretty", action="store_true", help="Human-readable log lines instead of JSON")

    subparsers = parser.add_subparsers(dest="command")

    ingest_parser = subparsers.add_parser("ingest", help="Hash, derive, upload and publish the catalog")
    ingest_parser.add_argument("--source", default=None, help="Source tree (default: PHOTOSHELF_SOURCE_ROOT)")
    ingest_parser.add_argument("--workers", type=int, default=None, help="Worker pool size")
    ingest_parser.add_argument("--dry-run", action="store_true", help="Check the store without writing to it")
    ingest_parser.set_defaults(func=_cmd_ingest)

    check_parser = subparsers.add_parser("check", help="Validate presence of ffmpeg/ffprobe dependencies")
    check_parser.add_argument("--store", action="store_true", help="Also verify the object store is reachable")
    check_parser.set_defaults(func=_cmd_check)

    show_parser = subparsers.add_parser("show", help="Summarise the latest published catalog")
    show_parser.set_defaults(func=_cmd_show)

    clear_parser = subparsers.add_parser("clear-cache", help="Delete derivatives and catalog snapshots")
    clear_parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    clear_parser.set_defaults(func=_cmd_clear_cache)

    prune_parser = subparsers.add_parser("prune", help="List stored assets the latest catalog no longer uses")
    prune_parser.add_argument("--apply", action="store_true", help="Delete the listed objects")
    prune_parser.set_defaults(func=_cmd_prune)

    schema_parser = subparsers.add_parser("schema", help="Export the catalog JSON schema")
    schema_parser.add_argument("--output", default=str(SchemaPath), help="Destination path")
    schema_parser.set_defaults(func=_cmd_schema)
    return parser


def _cmd_ingest(args: argparse.Namespace, settings: Settings) -> int:
    """Run the pipeline and print a summary.

    Item failures are reported but still exit 0; only structural errors fail
    the command.
    """
    pipeline = IngestPipeline(settings, get_storage(settings), max_workers=args.workers)
    source = Path(args.source).expanduser() if args.source else None
    summary = pipeline.run(source, dry_run=args.dry_run)
    _print_summary(summary)
    return EXIT_OK


def _print_summary(summary: RunSummary) -> None:
    console.rule("[bold]Dry run" if summary.dry_run else "[bold]Ingest summary")
    table = Table(show_header=False)
    table.add_row("Source", str(summary.source_root))
    table.add_row("Discovered", str(summary.discovered))
    table.add_row("Uploaded", str(summary.uploaded))
    table.add_row("Skipped (already stored)", str(summary.existing))
    table.add_row("Skipped (duplicate)", str(summary.duplicates))
    table.add_row("Failed", str(summary.failed))
    console.print(table)

    if summary.failures:
        failures = Table("File", "Section", "Stage", "Reason", title="Failed files")
        for item in summary.failures:
            failures.add_row(item.path.name, item.section, item.stage, item.reason)
        console.print(failures)

    if summary.published is not None:
        console.print(f"[green]Catalog published:[/] {summary.published.latest_url}")
        console.print(f"[dim]Snapshot {summary.published.version_key}[/]")


def _cmd_check(args: argparse.Namespace, settings: Settings) -> int:
    """Check for the presence of required external dependencies."""
    checks = {
        "ffmpeg": ["ffmpeg", "-version"],
        "ffprobe": ["ffprobe", "-version"],
    }
    results = {}
    for label, cmd in checks.items():
        try:
            subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=True)
            results[label] = True
        except (OSError, subprocess.CalledProcessError):
            results[label] = False

    if args.store:
        storage = get_storage(settings)
        try:
            storage.check()
            results[f"store ({settings.storage_backend})"] = True
        except Exception as exc:
            console.print(f"[red]Store check failed:[/] {exc}")
            results[f"store ({settings.storage_backend})"] = False

    console.rule("[bold]Environment Check")
    for label, ok in results.items():
        console.print(f"[bold]{label}[/]: {'✅' if ok else '❌'}")

    if not all(results.values()):
        console.print("[red]Missing dependencies detected.[/]")
        return EXIT_CHECK_FAILED
    console.print("[green]Environment looks good![/]")
    return EXIT_OK


def _cmd_show(args: argparse.Namespace, settings: Settings) -> int:
    catalog = CatalogPublisher(get_storage(settings)).load_latest()
    if catalog is None:
        console.print("[yellow]No catalog has been published yet.[/]")
        return EXIT_OK

    table = Table("Section", "Items", "Images", "Videos", title="Latest catalog")
    for name, section in catalog.sections.items():
        videos = sum(1 for record in section.images.values() if record.type == "video")
        table.add_row(name, str(len(section.images)), str(len(section.images) - videos), str(videos))
    console.print(table)
    return EXIT_OK


def _cmd_clear_cache(args: argparse.Namespace, settings: Settings) -> int:
    storage = get_storage(settings)
    if not args.yes:
        prompt = f"Delete everything under {', '.join(CACHE_PREFIXES)}? [y/N] "
        if console.input(prompt).strip().lower() not in {"y", "yes"}:
            console.print("Aborted.")
            return EXIT_OK
    removed = clear_cache(storage)
    console.print(f"[green]Removed {removed} cached objects.[/]")
    return EXIT_OK


def _cmd_prune(args: argparse.Namespace, settings: Settings) -> int:
    storage = get_storage(settings)
    catalog = CatalogPublisher(storage).load_latest()
    if catalog is None:
        console.print("[yellow]No catalog has been published yet; nothing to prune.[/]")
        return EXIT_OK

    report = prune(storage, catalog, apply=args.apply)
    for key in report.candidates:
        console.print(f"  {key}")
    if args.apply:
        console.print(f"[green]Deleted {report.deleted} unreferenced objects.[/]")
    else:
        console.print(f"{len(report.candidates)} unreferenced objects. Re-run with --apply to delete them.")
    return EXIT_OK


def _cmd_schema(args: argparse.Namespace, settings: Settings) -> int:
    path = export_schema(Path(args.output).expanduser())
    console.print(f"[dim]Schema written to {path}[/]")
    return EXIT_OK


if __name__ == "__main__":
    main()
