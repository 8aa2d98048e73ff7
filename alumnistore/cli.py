"""Command line helper for alumni store maintenance jobs."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from alumnistore import changelog, feed, media, migrate, ownership, profiles, schema
from alumnistore.errors import StoreError
from alumnistore.logging_config import configure_logging
from alumnistore.settings import load_store_settings
from alumnistore.sheets_client import get_gateway


def _context(args: argparse.Namespace):
    settings = load_store_settings(args.settings)
    configure_logging(settings.log_level, settings.log_path or None, console=args.verbose)
    return settings, get_gateway(settings)


def command_migrate(args: argparse.Namespace) -> int:
    try:
        settings, gateway = _context(args)
        report = asyncio.run(migrate.migrate_source_to_live(gateway, settings, dry_run=args.dry_run))
    except StoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    prefix = "Dry run" if report.dry_run else "Migrated"
    print(
        f"{prefix}: {report.touched_rows} row(s) touched, {report.changed_cells} cell(s) changed, "
        f"{report.new_rows} new, {report.updated_rows} updated, {report.skipped_no_id} skipped without id"
    )
    return 0


def command_ensure_headers(args: argparse.Namespace) -> int:
    try:
        settings, gateway = _context(args)
        written = asyncio.run(changelog.ensure_changes_header(gateway, settings.changes_tab, dry_run=args.dry_run))
    except StoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if written:
        print(f"Header {'would be ' if args.dry_run else ''}written to {settings.changes_tab}")
    else:
        print(f"{settings.changes_tab} header already up to date.")
    return 0


def command_resolve_owner(args: argparse.Namespace) -> int:
    try:
        settings, gateway = _context(args)
        record_id = asyncio.run(ownership.resolve_owner_record_id(gateway, args.email, settings))
    except StoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if not record_id:
        print(f"No record found for {args.email}")
        return 1
    print(record_id)
    return 0


def command_feature(args: argparse.Namespace) -> int:
    try:
        settings, gateway = _context(args)
        result = asyncio.run(
            media.feature_media(gateway, settings, args.record_id, args.kind, args.file_ref, identity=args.actor)
        )
    except StoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if result.changed:
        print(f"Updated {', '.join(result.changed_fields)} for {result.record_id}")
    else:
        print("Already up to date.")
    return 0


def command_undo(args: argparse.Namespace) -> int:
    try:
        settings, gateway = _context(args)
        result = asyncio.run(
            profiles.undo_change(gateway, settings, args.record_id, ts=args.ts, field=args.field, actor=args.actor or "")
        )
    except StoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    state = "Restored" if result.restored else "Marked undone"
    print(f"{state} {result.field} for {result.record_id} ({result.ts})")
    return 0


def command_post_update(args: argparse.Namespace) -> int:
    try:
        settings, gateway = _context(args)
        post = asyncio.run(profiles.post_update(gateway, settings, args.record_id, args.text, args.actor or ""))
    except (StoreError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if post.deduped:
        print("Update unchanged.")
    else:
        print(f"Posted {post.id}")
    return 0


def command_feed(args: argparse.Namespace) -> int:
    try:
        settings, gateway = _context(args)
        items = asyncio.run(feed.load_feed(gateway, settings, args.limit))
    except StoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(json.dumps([item.to_json() for item in items], indent=2, ensure_ascii=False))
    return 0


def _limit(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid limit: {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError("limit must be at least 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Alumni record store maintenance tool")
    parser.add_argument("--settings", default=None, help="Path to the settings JSON file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Mirror log output to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate_parser = subparsers.add_parser("migrate", help="Copy the source tab into the Live tab")
    migrate_parser.add_argument("--dry-run", action="store_true", help="Report changes without writing")
    migrate_parser.set_defaults(func=command_migrate)

    headers_parser = subparsers.add_parser("ensure-headers", help="Write the change-log header if it differs")
    headers_parser.add_argument("--dry-run", action="store_true", help="Only report whether a write is needed")
    headers_parser.set_defaults(func=command_ensure_headers)

    owner_parser = subparsers.add_parser("resolve-owner", help="Print the record id owned by an email")
    owner_parser.add_argument("email")
    owner_parser.set_defaults(func=command_resolve_owner)

    feature_parser = subparsers.add_parser("feature", help="Make a media item current or featured")
    feature_parser.add_argument("record_id")
    feature_parser.add_argument("kind", choices=sorted(schema.MEDIA_KINDS))
    feature_parser.add_argument("file_ref", help="Drive file id or external URL")
    feature_parser.add_argument("--actor", default=None, help="Email recorded as the change author")
    feature_parser.set_defaults(func=command_feature)

    undo_parser = subparsers.add_parser("undo", help="Revert the newest (or a specific) logged change")
    undo_parser.add_argument("record_id")
    undo_parser.add_argument("--ts", default="", help="Exact timestamp of the change to revert")
    undo_parser.add_argument("--field", default="", help="Limit to changes of this field")
    undo_parser.add_argument("--actor", default=None, help="Email recorded as the change author")
    undo_parser.set_defaults(func=command_undo)

    post_parser = subparsers.add_parser("post-update", help="Set a record's community update line")
    post_parser.add_argument("record_id")
    post_parser.add_argument("text")
    post_parser.add_argument("--actor", default=None, help="Email recorded as the change author")
    post_parser.set_defaults(func=command_post_update)

    feed_parser = subparsers.add_parser("feed", help="Print the recent-updates feed as JSON")
    feed_parser.add_argument("--limit", type=_limit, default=5)
    feed_parser.set_defaults(func=command_feed)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
