from __future__ import annotations

import argparse
import hmac
import json
import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Confirm
from rich.table import Table

from .allowlist import AccessType
from .config import StoreSettings
from .discovery import current_device_info, local_mac_candidates
from .errors import Result
from .oui import OUILookup
from .store import WhitelistStore

MUTATING = {"add", "remove", "update", "enable", "disable", "bulk-add", "cleanup"}


def configure_logging(level: str, console: Console) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _entries_table(entries: list[dict], oui: OUILookup | None) -> Table:
    t = Table(title="MAC whitelist", show_lines=False)
    t.add_column("MAC", style="bold")
    if oui is not None:
        t.add_column("Manufacturer")
    t.add_column("Access")
    t.add_column("Status")
    t.add_column("Description")
    t.add_column("Accesses", justify="right")
    t.add_column("Last seen")
    for e in entries:
        row = [e["macAddress"]]
        if oui is not None:
            row.append(oui.manufacturer(e["macAddress"]) or "(unknown)")
        row += [
            e["accessType"],
            "enabled" if e["active"] else "[red]disabled[/red]",
            e["description"] or "",
            str(e["accessCount"]),
            e["lastSeen"] or "[dim]never[/dim]",
        ]
        t.add_row(*row)
    return t


def _logs_table(logs: list[dict]) -> Table:
    t = Table(title="Recent access events")
    t.add_column("Time")
    t.add_column("Event")
    t.add_column("MAC")
    t.add_column("Device")
    t.add_column("Status")
    t.add_column("Message")
    for log in logs:
        dev = log.get("deviceInfo") or {}
        device = f"{dev.get('hostname') or '?'} ({dev.get('username') or '?'})" if dev else ""
        t.add_row(
            log["timestamp"],
            log.get("event", "check-access"),
            log.get("macAddress", "unknown"),
            device,
            "[green]ok[/green]" if log["success"] else "[red]denied[/red]",
            log.get("message", ""),
        )
    return t


def _print_stats(console: Console, stats: dict) -> None:
    console.print(
        f"Total: [bold]{stats['total']}[/bold]  |  "
        f"Active (24h): [bold]{stats['activeLast24h']}[/bold]  |  "
        f"Active (7d): [bold]{stats['activeLast7d']}[/bold]  |  "
        f"Never used: [bold]{stats['neverUsed']}[/bold]  |  "
        f"Total accesses: [bold]{stats['totalAccesses']}[/bold]"
    )
    by_type = stats["byAccessType"]
    console.print(f"Enabled: [bold]{stats['active']}[/bold]  |  Disabled: [bold]{stats['inactive']}[/bold]")
    console.print("By access type: " + ", ".join(f"{k}={v}" for k, v in by_type.items()))


def _report(console: Console, result: Result) -> int:
    for w in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {w}")
    if result.success:
        console.print(f"[green]✔[/green] {result.message}")
        return 0
    console.print(f"[red]✘[/red] {result.message}")
    return 1


# -------------------------------------------------
# Commands
# -------------------------------------------------

def cmd_check(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result:
    macs = args.mac or local_mac_candidates()
    console.print(f"[dim]Checking:[/dim] {', '.join(macs) or '(no MAC addresses found)'}")
    result = store.check_access(macs, current_device_info())
    if result.success:
        d = result.data
        console.print(f"{d['macAddress']}  access=[bold]{d['accessType']}[/bold]  count={d['accessCount']}")
    return result


def cmd_add(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result:
    return store.add(args.mac, args.description, args.access_type)


def cmd_remove(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result:
    return store.remove(args.mac)


def cmd_update(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result:
    return store.update_access_type(args.mac, args.access_type)


def cmd_set_active(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result:
    return store.set_active(args.mac, args.active)


def cmd_bulk_add(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result:
    raw = json.loads(Path(args.file).read_text(encoding="utf-8"))
    items = raw.get("macAddresses", raw) if isinstance(raw, dict) else raw
    result = store.bulk_add(items)
    if result.success:
        t = Table(title="Bulk add")
        t.add_column("MAC")
        t.add_column("Status")
        t.add_column("Detail")
        for r in result.data["results"]:
            t.add_row(str(r["macAddress"]), r["status"], r.get("reason") or r.get("accessType", ""))
        console.print(t)
    return result


def cmd_list(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result:
    result = store.list(include_inactive=not args.active_only)
    if result.success:
        oui = None if args.no_manuf else OUILookup()
        console.print(_entries_table(result.data["macAddresses"], oui))
        _print_stats(console, result.data["statistics"])
    return result


def cmd_stats(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result:
    result = store.list()
    if result.success:
        _print_stats(console, result.data["statistics"])
        top = sorted(
            (e for e in result.data["macAddresses"] if e["accessCount"] > 0),
            key=lambda e: e["accessCount"],
            reverse=True,
        )[:5]
        for i, e in enumerate(top, 1):
            console.print(f"  {i}. {e['macAddress']} - {e['accessCount']} accesses ({e['description']})")
        if not top:
            console.print("[dim]No devices have accessed the system yet[/dim]")
    return result


def cmd_logs(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result:
    result = store.get_logs(args.limit)
    if result.success:
        console.print(_logs_table(result.data["logs"]))
        console.print(f"[dim]{result.data['totalEvents']} events stored[/dim]")
    return result


def cmd_maintenance(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result:
    result = store.maintenance()
    if result.success:
        d = result.data
        console.print(
            f"Backup: [bold]{d['backupPath'] or 'not written'}[/bold]  |  "
            f"Entries fixed: [bold]{d['entriesFixed']}[/bold]  |  "
            f"Log entries trimmed: [bold]{d['logEntriesTrimmed']}[/bold]"
        )
    return result


def cmd_backup(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result:
    result = store.backup()
    if result.success:
        console.print(f"[dim]Saved:[/dim] {result.data['backupPath']}")
    return result


def cmd_export(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result:
    result = store.export(args.out)
    if result.success:
        console.print(f"[dim]Saved:[/dim] {result.data['path']}")
    return result


def cmd_cleanup(store: WhitelistStore, args: argparse.Namespace, console: Console) -> Result | None:
    listing = store.list()
    if not listing.success:
        return listing
    unused = [e for e in listing.data["macAddresses"] if not e["lastSeen"]]
    if not unused:
        return Result.ok("No unused entries found")
    for e in unused:
        console.print(f"  - {e['macAddress']} ({e['description']}) - Added: {e['addedAt']}")
    if not args.yes and not Confirm.ask(f"Remove these {len(unused)} unused entries?", console=console):
        console.print("[dim]Cleanup cancelled[/dim]")
        return None
    return store.cleanup_unused(only=[e["macAddress"] for e in unused])


# -------------------------------------------------
# Parser
# -------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="mac-access-guard")
    p.add_argument("--data-dir", help="Whitelist data directory (default: MACGUARD_DATA_DIR or ./data)")
    p.add_argument("--admin-key", help="Admin key, required for mutating commands when MACGUARD_ADMIN_KEY is set")
    p.add_argument("--json", action="store_true", help="Print the raw result envelope as JSON")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)
    types = [t.value for t in AccessType]

    check = sub.add_parser("check", help="Check whether this machine (or --mac) is whitelisted")
    check.add_argument("--mac", action="append", help="Candidate MAC; repeat in order of preference")
    check.set_defaults(func=cmd_check)

    add = sub.add_parser("add", help="Whitelist a MAC address")
    add.add_argument("mac")
    add.add_argument("--description", default="", help="Free-text description")
    add.add_argument("--access-type", default=AccessType.TRIAL.value, choices=types)
    add.set_defaults(func=cmd_add)

    remove = sub.add_parser("remove", help="Remove a MAC address")
    remove.add_argument("mac")
    remove.set_defaults(func=cmd_remove)

    enable = sub.add_parser("enable", help="Re-enable a disabled MAC address")
    enable.add_argument("mac")
    enable.set_defaults(func=cmd_set_active, active=True)

    disable = sub.add_parser("disable", help="Disable a MAC address without removing it")
    disable.add_argument("mac")
    disable.set_defaults(func=cmd_set_active, active=False)

    update = sub.add_parser("update", help="Change the access type of a MAC address")
    update.add_argument("mac")
    update.add_argument("access_type", choices=types)
    update.set_defaults(func=cmd_update)

    bulk = sub.add_parser("bulk-add", help="Import MAC addresses from a JSON file")
    bulk.add_argument("file", help='JSON list or {"macAddresses": [...]}')
    bulk.set_defaults(func=cmd_bulk_add)

    lst = sub.add_parser("list", help="List whitelisted MAC addresses")
    lst.add_argument("--active-only", action="store_true", help="Hide disabled entries")
    lst.add_argument("--no-manuf", action="store_true", help="Skip manufacturer lookup")
    lst.set_defaults(func=cmd_list)

    stats = sub.add_parser("stats", help="Show whitelist statistics")
    stats.set_defaults(func=cmd_stats)

    logs = sub.add_parser("logs", help="Show recent access events")
    logs.add_argument("--limit", type=int, default=20)
    logs.set_defaults(func=cmd_logs)

    maint = sub.add_parser("maintenance", help="Backup, trim the log and repair entries")
    maint.set_defaults(func=cmd_maintenance)

    backup = sub.add_parser("backup", help="Write a whitelist backup")
    backup.set_defaults(func=cmd_backup)

    export = sub.add_parser("export", help="Export the whitelist to JSON")
    export.add_argument("out", help="Output JSON file")
    export.set_defaults(func=cmd_export)

    cleanup = sub.add_parser("cleanup", help="Remove entries that were never used")
    cleanup.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    cleanup.set_defaults(func=cmd_cleanup)

    return p


def run(argv: list[str] | None = None, settings: StoreSettings | None = None) -> int:
    console = Console()
    args = build_parser().parse_args(argv)

    settings = settings or StoreSettings()
    if args.data_dir:
        settings = settings.model_copy(update={"data_dir": Path(args.data_dir)})
    configure_logging("DEBUG" if args.verbose else settings.log_level, console)

    # Credential check belongs to the caller, never to the store
    if args.cmd in MUTATING and settings.admin_key:
        if not args.admin_key or not hmac.compare_digest(args.admin_key, settings.admin_key):
            console.print("[red]Error:[/red] invalid or missing admin key")
            return 1

    store = WhitelistStore.from_settings(settings)
    result = args.func(store, args, console)
    if result is None:
        return 0
    if args.json:
        console.print_json(data=result.to_dict())
        return 0 if result.success else 1
    return _report(console, result)


def main() -> None:
    try:
        raise SystemExit(run())
    except KeyboardInterrupt:
        raise SystemExit(2)
    except Exception as e:
        Console().print(f"[red]Error:[/red] {e}")
        raise SystemExit(2)
