#!/usr/bin/env python3
"""
fc — FieldCapture CLI

Usage:
    fc init                                 Initialize config, database, starter clients
    fc status                               Config and local store diagnostics
    fc clients                              List clients (most recently used first)
    fc client-add <REF> <name> [--tier T]   Add a client
    fc client-rename <OLD> <NEW> [--name N] Change a client's reference (jobs follow)
    fc client-delete <REF>                  Remove a client record
    fc jobs                                 List jobs
    fc job-new <REF> [notes] [--location L] Create a job ("P2 tomorrow" hints work)
    fc show <job_id>                        Job details with photos and voice notes
    fc start <job_id>                       Start the timer (stops any other)
    fc stop <job_id>                        Stop the running timer
    fc note <job_id> <text>                 Replace the job notes
    fc done <job_id>                        Toggle completed
    fc delete <job_id>                      Delete a job and its attachments
    fc sync                                 Push, pull and notify other devices
    fc watch                                Keep syncing until interrupted
    fc config <key> <value>                 Set a config value

Global flags:
    -v, --verbose                           Log sync activity to stderr
"""

from __future__ import annotations

import json
import logging
import sys


def _json_out(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _out_or_err(result):
    if isinstance(result, dict) and "error" in result:
        _err(result["error"])
    _json_out(result)


def cmd_init(args):
    from fieldcapture.api import init
    result = init()
    for item in result["created"]:
        print(f"  created: {item}")
    for item in result["existing"]:
        print(f"  exists:  {item}")
    if result.get("seeded_clients"):
        print(f"  clients: {', '.join(result['seeded_clients'])}")
    print("\nFieldCapture initialized.")
    print("Next: edit ~/.fieldcapture/config.yaml to set remote_url, api_key and user_id")
    print("Then: fc sync")


def cmd_status(args):
    from fieldcapture.api import status
    result = status()
    if result.get("remote_ok"):
        print(f"  remote:   {result['remote_url']} (user {result.get('user_id') or '?'})")
    else:
        print(f"  remote:   NOT CONFIGURED ({result.get('remote_error', '')})")
    if "db_error" in result:
        print(f"  db:       {result['db_error']}")
    else:
        print(f"  db:       {result.get('db_path', '?')}")
        print(
            f"  data:     {result.get('jobs', 0)} jobs, "
            f"{result.get('clients', 0)} clients, "
            f"{result.get('photos', 0)} photos, "
            f"{result.get('voice_notes', 0)} voice notes"
        )
        if result.get("unsynced"):
            print(f"  unsynced: {result['unsynced']} changes")


def cmd_clients(args):
    from fieldcapture.api import clients
    items = clients()
    if isinstance(items, dict):
        _err(items["error"])
    if not items:
        print("No clients. Add one with: fc client-add <REF> <name>")
        return
    for c in items:
        mark = "*" if c["dirty"] else " "
        print(f"  [{mark}] {c['ref']:12s}  {c['name']}")
    print(f"\n  [{len(items)} clients, * = not yet synced]")


def cmd_client_add(args):
    from fieldcapture.api import client_add
    positional = _positional(args, "--tier")
    if len(positional) < 2:
        _err("Usage: fc client-add <REF> <name> [--tier T]")
    _out_or_err(client_add(positional[0], " ".join(positional[1:]), tier=_get_opt(args, "--tier")))


def cmd_client_rename(args):
    from fieldcapture.api import client_rename
    positional = _positional(args, "--name")
    if not positional:
        _err("Usage: fc client-rename <OLD> <NEW> [--name N]")
    new_ref = positional[1] if len(positional) > 1 else None
    _out_or_err(client_rename(positional[0], new_ref, name=_get_opt(args, "--name")))


def cmd_client_delete(args):
    from fieldcapture.api import client_delete
    if not args:
        _err("Usage: fc client-delete <REF>")
    _out_or_err(client_delete(args[0]))


def cmd_jobs(args):
    from fieldcapture.api import jobs
    result = jobs()
    if "error" in result:
        _err(result["error"])
    if not result["jobs"]:
        print("No jobs yet. Create one with: fc job-new <REF> [notes]")
        return
    for j in result["jobs"]:
        state = "done" if j["completed"] else ("RUN " if j["running"] else "    ")
        mark = "*" if j["dirty"] else " "
        print(
            f"  [{mark}] {j['id'][:8]}  {state}  P{j['priority']}  "
            f"{j['client_ref']:12s}  {j['total_display']:>7s}  {j['notes'][:40]}"
        )
    print(f"\n  [{result['total']} jobs, * = not yet synced]")


def cmd_job_new(args):
    from fieldcapture.api import job_new
    positional = _positional(args, "--location")
    if not positional:
        _err("Usage: fc job-new <REF> [notes] [--location OnSite|Remote]")
    _out_or_err(
        job_new(
            positional[0],
            " ".join(positional[1:]),
            location=_get_opt(args, "--location"),
        )
    )


def cmd_show(args):
    from fieldcapture.api import show
    if not args:
        _err("Usage: fc show <job_id>")
    _out_or_err(show(args[0]))


def cmd_start(args):
    from fieldcapture.api import start
    if not args:
        _err("Usage: fc start <job_id>")
    _out_or_err(start(args[0]))


def cmd_stop(args):
    from fieldcapture.api import stop
    if not args:
        _err("Usage: fc stop <job_id>")
    result = stop(args[0])
    if "error" not in result:
        print(f"  total: {result['total_display']}", file=sys.stderr)
    _out_or_err(result)


def cmd_note(args):
    from fieldcapture.api import note
    if len(args) < 2:
        _err("Usage: fc note <job_id> <text>")
    _out_or_err(note(args[0], " ".join(args[1:])))


def cmd_done(args):
    from fieldcapture.api import done
    if not args:
        _err("Usage: fc done <job_id>")
    _out_or_err(done(args[0]))


def cmd_delete(args):
    from fieldcapture.api import delete
    if not args:
        _err("Usage: fc delete <job_id>")
    _out_or_err(delete(args[0]))


def cmd_sync(args):
    from fieldcapture.api import sync
    print("Syncing...", file=sys.stderr)
    result = sync()
    if "error" in result:
        _err(result["error"])
    print(
        f"  pushed {result['pushed']} changes, {result['deleted']} deletes "
        f"({result['failed']} failed, {result['unsynced']} still unsynced)",
        file=sys.stderr,
    )
    for err in result.get("errors", []):
        print(f"  ! {err['operation']}: {err['error']}", file=sys.stderr)
    _json_out(result)


def cmd_watch(args):
    import asyncio

    from fieldcapture.core.errors import FieldCaptureError
    from fieldcapture.sync.events import EventBus, JobsUpdated, SyncError
    from fieldcapture.worker import watch

    bus = EventBus()
    bus.subscribe(lambda e: print(f"  ! {e.operation}: {e.message}", file=sys.stderr), SyncError)
    bus.subscribe(lambda e: print(f"  updated {len(e.job_ids)} job(s)", file=sys.stderr), JobsUpdated)

    print("Watching for changes (Ctrl-C to stop)...", file=sys.stderr)
    try:
        asyncio.run(watch(bus=bus))
    except FieldCaptureError as e:
        _err(str(e))
    except KeyboardInterrupt:
        print("\nStopped.", file=sys.stderr)


def cmd_config(args):
    from fieldcapture.api import setup_config
    if len(args) < 2:
        _err("Usage: fc config <key> <value>")
    _json_out(setup_config(args[0], args[1]))


COMMANDS = {
    "init": cmd_init,
    "status": cmd_status,
    "clients": cmd_clients,
    "client-add": cmd_client_add,
    "client-rename": cmd_client_rename,
    "client-delete": cmd_client_delete,
    "jobs": cmd_jobs,
    "job-new": cmd_job_new,
    "show": cmd_show,
    "start": cmd_start,
    "stop": cmd_stop,
    "note": cmd_note,
    "done": cmd_done,
    "delete": cmd_delete,
    "sync": cmd_sync,
    "watch": cmd_watch,
    "config": cmd_config,
}


def _get_opt(args, flag):
    """Extract value after a flag from args list."""
    if flag in args:
        idx = args.index(flag)
        if idx + 1 < len(args):
            return args[idx + 1]
    return None


def _positional(args, *value_flags):
    """Args that are neither flags nor the values following ``value_flags``."""
    out = []
    skip = False
    for a in args:
        if skip:
            skip = False
            continue
        if a in value_flags:
            skip = True
            continue
        if a.startswith("-"):
            continue
        out.append(a)
    return out


def _err(msg):
    print(msg, file=sys.stderr)
    sys.exit(1)


def _setup_logging(verbose: bool) -> None:
    from fieldcapture.core.config import Config
    level = "INFO" if verbose else Config.load().log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main():
    argv = sys.argv[1:]
    verbose = any(a in ("-v", "--verbose") for a in argv)
    argv = [a for a in argv if a not in ("-v", "--verbose")]

    if not argv or argv[0] in ("-h", "--help", "help"):
        print(__doc__.strip())
        sys.exit(0)

    cmd = argv[0]
    handler = COMMANDS.get(cmd)
    if not handler:
        print(f"Unknown command: {cmd}", file=sys.stderr)
        print(f"Available: {', '.join(COMMANDS.keys())}", file=sys.stderr)
        sys.exit(1)

    _setup_logging(verbose)
    handler(argv[1:])


if __name__ == "__main__":
    main()
