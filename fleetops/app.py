import argparse
import asyncio
from pathlib import Path

from .env import Settings, load_env

from . import __version__
from .client import HttpBackend
from .dispatch import BatchDispatcher, ChunkPolicy
from .errors import BackendError, DispatchFailure, InputError
from .local_backend import LocalBackend
from .logger import get_logger
from .models import AllMatching, ExplicitIds, InventoryFilter
from .pipeline import OnboardingPipeline, ProbeMode
from .sheet import parse_workbook
from .template import build_template, template_filename


def make_backend(args: argparse.Namespace, settings: Settings):
    """--db selects the local SQLite inventory, otherwise the REST API."""
    if getattr(args, "db", None):
        return LocalBackend(Path(args.db))
    return HttpBackend.from_settings(settings)


def _read_input(path_arg: str) -> bytes:
    input_path = Path(path_arg)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    return input_path.read_bytes()


def cmd_template(args: argparse.Namespace) -> None:
    output = Path(args.output) if args.output else Path(template_filename())
    output.write_bytes(build_template(include_samples=not args.empty))
    print(f"Template written to {output}")


def cmd_validate(args: argparse.Namespace) -> None:
    try:
        result = parse_workbook(_read_input(args.input))
    except InputError as e:
        raise SystemExit(f"Invalid sheet: {e}")
    for record in result.records:
        a = record.attributes
        print(f"Row {record.row_number}: {a.ip_address}:{a.ssh_port} ({a.hostname})")
    if result.errors:
        print("Invalid rows:")
        for e in result.errors:
            print(f" - {e}")
    print(f"{len(result.records)} valid, {len(result.errors)} rejected")
    if result.errors or not result.records:
        raise SystemExit(2)


async def _onboard(args: argparse.Namespace, settings: Settings) -> int:
    backend = make_backend(args, settings)
    pipeline = OnboardingPipeline(
        backend,
        dispatcher=BatchDispatcher(backend, ChunkPolicy.from_settings(settings)),
        retention_seconds=settings.retention_seconds,
        max_concurrency=settings.max_concurrency,
        probe_mode=ProbeMode(args.probe_mode),
    )
    try:
        result = pipeline.load_workbook(_read_input(args.input), source_name=args.input)
    except InputError as e:
        raise SystemExit(f"Invalid sheet: {e}")
    for e in result.errors:
        print(f"[skipped] {e}")
    if not pipeline.records:
        raise SystemExit("No valid servers found in the sheet")

    summary = await pipeline.test_connections()
    for r in pipeline.records:
        print(f"[{r.status.value}] {r.attributes.ip_address} - {r.message}")
    print(f"Test connection completed: {summary.succeeded}/{summary.tested} successful")

    if pipeline.has_failed:
        # Failed rows stay visible for the retention window, then drop out
        await pipeline.wait_for_retention()
    if not pipeline.records:
        raise SystemExit("No servers connected successfully")
    if args.dry_run:
        print(f"Dry run: {len(pipeline.records)} servers ready to add")
        return 0

    try:
        created = await pipeline.commit(args.group_id)
    except DispatchFailure as e:
        raise SystemExit(f"Unable to add servers: {e}")
    print(f"Successfully added {created} servers")
    return created


def cmd_onboard(args: argparse.Namespace) -> None:
    asyncio.run(_onboard(args, Settings.from_env()))


async def _list(args: argparse.Namespace, settings: Settings) -> None:
    backend = make_backend(args, settings)
    flt = InventoryFilter(keyword=args.keyword, status=args.status).normalized()
    page = await backend.inventory(flt, args.page, args.page_size)
    if not page.records:
        print("No servers found.")
        return
    print(f"Showing {len(page.records)} of {page.total_count} servers:\n")
    for record in page.records:
        print(f"ID: {record.id}")
        print(f"  Hostname: {record.get('hostname')}")
        print(f"  Address: {record.get('ip_address')}")
        print(f"  OS: {record.get('os_version')}")
        print()


def cmd_list(args: argparse.Namespace) -> None:
    try:
        asyncio.run(_list(args, Settings.from_env()))
    except BackendError as e:
        raise SystemExit(f"Unable to load servers: {e}")


async def _scan(args: argparse.Namespace, settings: Settings) -> bool:
    backend = make_backend(args, settings)
    dispatcher = BatchDispatcher(
        backend,
        ChunkPolicy.from_settings(settings),
        split_requests=args.split,
    )
    if args.ids:
        ids = sorted({int(i) for i in args.ids.split(",") if i.strip()})
        target = ExplicitIds(ids=tuple(ids))
    else:
        flt = InventoryFilter(keyword=args.keyword).normalized()
        first = await backend.inventory(flt, 1, 1)
        target = AllMatching(filter=flt, count=first.total_count)
        if target.count == 0:
            raise SystemExit("No servers match")

    job = dispatcher.submit_scan(target)
    print(f"Submitting scan for {job.target_count} servers (batch size {job.batch_size})")
    try:
        result = await job.wait()
    except DispatchFailure as e:
        print(f"Failed to start scan: {e}")
        return False
    print(result.message or "Scan started")
    return True


def cmd_scan(args: argparse.Namespace) -> None:
    try:
        ok = asyncio.run(_scan(args, Settings.from_env()))
    except BackendError as e:
        raise SystemExit(f"Unable to load servers: {e}")
    if not ok:
        raise SystemExit(1)


def main():
    # Load .env if present (FLEETOPS_API_URL, FLEETOPS_API_TOKEN, etc.)
    load_env()
    parser = argparse.ArgumentParser(prog="fleetops", description="Bulk server onboarding and compliance scans")
    parser.add_argument("--version", action="store_true", help="Show version")

    subparsers = parser.add_subparsers(dest="command")
    tpl = subparsers.add_parser("template", help="Write the .xlsx upload template")
    tpl.add_argument("--output", help="Output path (default: server-template-YYYY-MM-DD.xlsx)")
    tpl.add_argument("--empty", action="store_true", help="Headers only, no sample rows")
    tpl.set_defaults(func=cmd_template)

    val = subparsers.add_parser("validate", help="Parse an upload sheet and report row errors")
    val.add_argument("--input", required=True, help="Path to .xlsx sheet")
    val.set_defaults(func=cmd_validate)

    onb = subparsers.add_parser("onboard", help="Validate, test and add the servers in a sheet")
    onb.add_argument("--input", required=True, help="Path to .xlsx sheet")
    onb.add_argument("--group-id", type=int, required=True, help="Workload group for the new servers")
    onb.add_argument("--probe-mode", choices=[m.value for m in ProbeMode], default=ProbeMode.BATCH.value,
                     help="One batched connectivity request, or one per server")
    onb.add_argument("--dry-run", action="store_true", help="Stop after testing; add nothing")
    onb.add_argument("--db", help="Use a local SQLite inventory instead of the API")
    onb.set_defaults(func=cmd_onboard)

    lst = subparsers.add_parser("list", help="List servers in the inventory")
    lst.add_argument("--keyword", help="Filter by hostname or address")
    lst.add_argument("--status", help="Filter by status")
    lst.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    lst.add_argument("--page-size", type=int, default=10, help="Servers per page (default: 10)")
    lst.add_argument("--db", help="Use a local SQLite inventory instead of the API")
    lst.set_defaults(func=cmd_list)

    scn = subparsers.add_parser("scan", help="Start a compliance scan")
    scn.add_argument("--ids", help="Comma-separated server ids (default: all servers)")
    scn.add_argument("--keyword", help="Scan every server matching this search")
    scn.add_argument("--split", action="store_true", help="Send one request per batch of ids")
    scn.add_argument("--db", help="Use a local SQLite inventory instead of the API")
    scn.set_defaults(func=cmd_scan)

    args = parser.parse_args()

    if args.version:
        print(__version__)
        return

    if hasattr(args, "func"):
        args.func(args)
        get_logger().log_metrics_summary()
        return

    parser.print_help()


if __name__ == "__main__":
    main()
