#!/usr/bin/env python3
import argparse
import logging
import sys
import threading
from pathlib import Path

from core.backupfs import BackupDiscovery, BackupStatus, UnsupportedBackupError
from core.config import ExportOptions, get_settings
from core.services.downloader import HttpDownloader, NullDownloader
from worker.tasks import export_backup

_IGNORE_FLAGS = ("avatar", "audio", "image", "video", "emoji", "file", "card", "sharing")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Export WeChat conversations from an unencrypted iOS backup.")
    parser.add_argument("backup", nargs="?", help="Backup directory (omit with --list)")
    parser.add_argument("-o", "--output", help="Output directory")
    parser.add_argument("--list", action="store_true", help="List backups under the configured base path")
    parser.add_argument("--desc", action="store_true", help="Newest messages first")
    parser.add_argument("--text-mode", action="store_true", help="Text only, no media or escaping")
    parser.add_argument("--no-html-escape", action="store_true")
    parser.add_argument("--icon-in-session", action="store_true", help="Keep avatars and stickers per session")
    parser.add_argument("--brief-contacts", action="store_true", help="Load contact names only")
    parser.add_argument("--offline", action="store_true", help="Never download remote assets")
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--timezone", default=None)
    for name in _IGNORE_FLAGS:
        parser.add_argument(f"--ignore-{name}", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def options_from_args(args: argparse.Namespace, base: ExportOptions) -> ExportOptions:
    overrides = {f"ignore_{name}": True for name in _IGNORE_FLAGS if getattr(args, f"ignore_{name}")}
    if args.desc:
        overrides["descending"] = True
    if args.text_mode:
        overrides["text_mode"] = True
    if args.no_html_escape:
        overrides["ignore_html_escape"] = True
    if args.icon_in_session:
        overrides["icon_in_session"] = True
    if args.brief_contacts:
        overrides["detailed_contacts"] = False
    if args.workers:
        overrides["workers"] = args.workers
    if args.timezone is not None:
        overrides["timezone"] = args.timezone
    return base.model_copy(update=overrides)


def list_backups(base_path: Path) -> int:
    backups = BackupDiscovery(base_path).discover()
    if not backups:
        print(f"No backups found under {base_path}")
        return 1
    for summary in backups:
        marker = "" if summary.status is BackupStatus.READY else f" [{summary.status.value}]"
        modified = summary.last_modified_at.strftime("%Y-%m-%d") if summary.last_modified_at else "?"
        print(f"{summary.path}  {summary.display_name}  {modified}  WeChat {summary.wechat_version or '?'}{marker}")
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()
    if args.list:
        return list_backups(Path(settings.backup_paths.base_path))
    if not args.backup:
        print("A backup directory is required (or use --list)", file=sys.stderr)
        return 2

    options = options_from_args(args, settings.export)
    if args.offline or not settings.download.enabled:
        downloader = NullDownloader()
    else:
        downloader = HttpDownloader(timeout=options.download_timeout, user_agent=settings.download.user_agent)
    output = Path(args.output or settings.backup_paths.output_path).expanduser()

    cancel_event = threading.Event()
    try:
        reports = export_backup(
            args.backup,
            output,
            options=options,
            downloader=downloader,
            cancel_event=cancel_event,
        )
    except UnsupportedBackupError as exc:
        print(f"Cannot export: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        cancel_event.set()
        print("Export interrupted", file=sys.stderr)
        return 130

    for report in reports:
        emitted = sum(item.result.emitted for item in report.sessions)
        missing = sum(item.result.missing_media for item in report.sessions)
        print(f"{report.display_name}: {len(report.sessions)} sessions, {emitted} messages, {missing} missing media")
    return 0


if __name__ == "__main__":
    sys.exit(main())
