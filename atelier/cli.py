"""Command line trigger surface; meant to be called from cron or by hand."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys

from atelier.config import get_settings
from atelier.orchestrator import (
    TASK_KEYS,
    UnknownItem,
    UnknownTask,
    add_variant,
    build_context,
    enqueue,
    preview_due_work,
    remove_variant,
    run_due_work,
)
from atelier.status import InvalidTransition
from storage.metadata import MetadataWriteError


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="atelier")
    parser.add_argument("--images-dir", help="override IMAGES_DIR")
    parser.add_argument("--variants-dir", help="override VARIANTS_DIR")
    sub = parser.add_subparsers(dest="cmd", required=True)

    enq = sub.add_parser("enqueue", help="mark a task as wanted")
    enq.add_argument("item")
    enq.add_argument("task", choices=sorted(TASK_KEYS))
    enq.add_argument("--force", action="store_true", help="reset even if in progress")
    enq.add_argument("--offset", type=float, default=None, help="corner inset percent (0-10)")

    run = sub.add_parser("run", help="run due work once")
    run.add_argument("--max-units", type=int, default=None)

    prev = sub.add_parser("preview", help="show due work without dispatching")
    prev.add_argument("--max-units", type=int, default=None)

    addv = sub.add_parser("add-variant")
    addv.add_argument("item")
    addv.add_argument("name")

    rmv = sub.add_parser("remove-variant")
    rmv.add_argument("item")
    rmv.add_argument("name")

    show = sub.add_parser("show", help="print an item's metadata record")
    show.add_argument("item")

    args = parser.parse_args(argv)

    settings = get_settings()
    overrides = {}
    if args.images_dir:
        overrides["images_dir"] = args.images_dir
    if args.variants_dir:
        overrides["variants_dir"] = args.variants_dir
    if overrides:
        settings = dataclasses.replace(settings, **overrides)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.cmd == "enqueue":
            ctx = build_context(settings, with_client=False)
            _print_json(enqueue(args.item, args.task, force=args.force,
                                offset_percent=args.offset, ctx=ctx))
            return 0

        if args.cmd == "run":
            summary = run_due_work(settings, max_units=args.max_units)
            _print_json(summary.model_dump())
            return 1 if summary.errors else 0

        if args.cmd == "preview":
            _print_json(preview_due_work(settings, max_units=args.max_units).model_dump())
            return 0

        ctx = build_context(settings, with_client=False)
        if args.cmd == "add-variant":
            _print_json(add_variant(args.item, args.name, ctx=ctx))
            return 0

        if args.cmd == "remove-variant":
            _print_json(remove_variant(args.item, args.name, ctx=ctx))
            return 0

        if args.cmd == "show":
            if not ctx.store.exists(args.item):
                raise UnknownItem(args.item)
            _print_json(ctx.store.read(args.item))
            return 0
    except (UnknownItem, UnknownTask, InvalidTransition, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except MetadataWriteError as e:
        print(f"error: {e}", file=sys.stderr)
        return 3

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
