from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List
from uuid import uuid4

from core.backupfs import BackupDiscovery, BackupIndex, ManifestQueryError, cell_data_version_for
from core.backupfs.types import WECHAT_SHARE_DOMAIN
from core.config import ExportOptions, get_settings
from core.queue import get_connection, get_queue
from core.services.downloader import Downloader, HttpDownloader, NullDownloader
from parsers.accounts import discover_accounts, user_root
from parsers.contacts import ContactBook, Profile, parse_contacts
from parsers.messages import (
    CancelFlag,
    MessageSink,
    NormalizedMessage,
    SessionParser,
    SessionParseResult,
    safe_file_name,
    session_file_stem,
)
from parsers.sessions import Session, SessionsParser

logger = logging.getLogger(__name__)

CANCEL_TTL_SECONDS = 24 * 3600


@dataclass(slots=True)
class SessionReport:
    usr_name: str
    display_name: str
    record_count: int
    result: SessionParseResult


@dataclass(slots=True)
class AccountReport:
    usr_name: str
    display_name: str
    sessions: List[SessionReport] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return any(report.result.cancelled for report in self.sessions)


class JsonLinesSink:
    """Write each record as one JSON line; stops once the shared cancel flag is raised."""

    def __init__(self, path: Path, cancel_event: CancelFlag | None = None):
        self.path = path
        self.cancel_event = cancel_event
        self._fp = None

    def __call__(self, batch: List[NormalizedMessage]) -> bool:
        if self._fp is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fp = self.path.open("w", encoding="utf-8")
        for message in batch:
            self._fp.write(json.dumps(message.to_dict(), ensure_ascii=False))
            self._fp.write("\n")
        return not (self.cancel_event is not None and self.cancel_event.is_set())

    def close(self) -> None:
        if self._fp is not None:
            self._fp.close()
            self._fp = None


class RedisCancellationFlag:
    """Cancellation flag shared by every worker of one queued export."""

    def __init__(self, connection, key: str):
        self.connection = connection
        self.key = key

    def is_set(self) -> bool:
        return bool(self.connection.exists(self.key))

    def set(self) -> None:
        self.connection.set(self.key, "1", ex=CANCEL_TTL_SECONDS)


SinkFactory = Callable[[Session, Path], MessageSink]


def load_contacts(index: BackupIndex, owner: Profile, detailed: bool = True) -> ContactBook:
    root = user_root(owner)
    for name in ("WCDB_Contact.sqlite", "MM.sqlite"):
        db_path = index.real_path_of(f"{root}/DB/{name}")
        if db_path is None:
            continue
        contacts = parse_contacts(db_path, detailed=detailed)
        if len(contacts):
            return contacts
    return ContactBook()


def load_share_index(backup_path: Path) -> BackupIndex | None:
    try:
        index = BackupIndex.load(backup_path, WECHAT_SHARE_DOMAIN)
    except ManifestQueryError as exc:
        logger.warning("Group container unavailable in %s: %s", backup_path, exc)
        return None
    return index if len(index) else None


def export_sessions(
    index: BackupIndex,
    owner: Profile,
    contacts: ContactBook,
    sessions: List[Session],
    output_dir: Path,
    *,
    options: ExportOptions,
    downloader: Downloader | None = None,
    cancel_event: CancelFlag | None = None,
    sink_factory: SinkFactory | None = None,
) -> List[SessionReport]:
    """Normalize ``sessions`` concurrently; every worker shares one cancel flag."""
    flag = cancel_event if cancel_event is not None else threading.Event()
    factory = sink_factory or (
        lambda session, directory: JsonLinesSink(directory / f"{session_file_stem(session)}.jsonl", flag)
    )

    def _export(session: Session) -> SessionReport:
        report = SessionReport(session.usr_name, session.name, session.record_count, SessionParseResult())
        if flag.is_set():
            report.result.cancelled = True
            return report
        parser = SessionParser(
            owner,
            contacts,
            index,
            options=options,
            downloader=downloader,
            cancel_event=flag,
        )
        sink = factory(session, output_dir)
        try:
            report.result = parser.parse(session, output_dir, sink)
        finally:
            close = getattr(sink, "close", None)
            if callable(close):
                close()
        if report.result.cancelled and hasattr(flag, "set"):
            flag.set()
        return report

    pool = ThreadPoolExecutor(max_workers=options.workers)
    try:
        futures = [pool.submit(_export, session) for session in sessions]
        return [future.result() for future in futures]
    except BaseException:
        # running workers stop at their next row; queued sessions never start
        if hasattr(flag, "set"):
            flag.set()
        pool.shutdown(wait=False, cancel_futures=True)
        raise
    finally:
        pool.shutdown(wait=True)


def export_backup(
    backup_path: Path | str,
    output_dir: Path | str,
    *,
    options: ExportOptions | None = None,
    downloader: Downloader | None = None,
    cancel_event: CancelFlag | None = None,
) -> List[AccountReport]:
    options = options or ExportOptions()
    backup_path = Path(backup_path).expanduser()
    output_dir = Path(output_dir).expanduser()

    summary = BackupDiscovery(backup_path.parent).open_backup(backup_path)
    index = BackupIndex.load(backup_path)
    share_index = load_share_index(backup_path)
    cell_data_version = options.cell_data_version
    if cell_data_version is None:
        cell_data_version = cell_data_version_for(summary.wechat_version)
    logger.info("Exporting %s (WeChat %s)", summary.display_name, summary.wechat_version or "unknown")

    reports: List[AccountReport] = []
    for account in discover_accounts(index):
        contacts = load_contacts(index, account, options.detailed_contacts)
        sessions = SessionsParser(
            index,
            cell_data_version,
            options.detailed_contacts,
            share_index=share_index,
        ).parse(account, contacts)
        account_dir = output_dir / safe_file_name(account.name, account.hash)
        report = AccountReport(account.usr_name, account.name)
        report.sessions = export_sessions(
            index,
            account,
            contacts,
            sessions,
            account_dir,
            options=options,
            downloader=downloader,
            cancel_event=cancel_event,
        )
        reports.append(report)
        if report.cancelled:
            logger.info("Export cancelled during account %s", account.name)
            break
    return reports


def export_backup_job(
    backup_path: str,
    output_dir: str,
    options: dict | None = None,
    cancel_key: str | None = None,
) -> dict:
    settings = get_settings()
    export_options = ExportOptions(**options) if options else settings.export
    if settings.download.enabled:
        downloader: Downloader = HttpDownloader(
            timeout=export_options.download_timeout,
            user_agent=settings.download.user_agent,
        )
    else:
        downloader = NullDownloader()
    flag = RedisCancellationFlag(get_connection(), cancel_key) if cancel_key else None
    reports = export_backup(
        backup_path,
        output_dir,
        options=export_options,
        downloader=downloader,
        cancel_event=flag,
    )
    return {
        "accounts": [
            {
                "usr_name": report.usr_name,
                "display_name": report.display_name,
                "sessions": len(report.sessions),
                "messages": sum(item.result.emitted for item in report.sessions),
                "skipped": sum(item.result.skipped for item in report.sessions),
                "cancelled": report.cancelled,
            }
            for report in reports
        ]
    }


def enqueue_export(backup_path: str, output_dir: str, options: ExportOptions | None = None) -> str:
    settings = get_settings()
    job_id = uuid4().hex
    cancel_key = settings.redis.cancel_key_prefix + job_id
    get_queue().enqueue(
        export_backup_job,
        backup_path,
        output_dir,
        options.model_dump() if options else None,
        cancel_key,
        job_id=job_id,
    )
    return job_id


def request_cancel(job_id: str) -> None:
    settings = get_settings()
    RedisCancellationFlag(get_connection(), settings.redis.cancel_key_prefix + job_id).set()
