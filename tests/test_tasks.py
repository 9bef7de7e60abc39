from __future__ import annotations

import json
import threading

import pytest

from core.backupfs import BackupIndex, UnsupportedBackupError
from core.backupfs.types import WECHAT_SHARE_DOMAIN
from core.config import ExportOptions, get_settings
from parsers.contacts import ContactBook, Profile
from parsers.sessions import Session
from worker import tasks
from worker.tasks import JsonLinesSink, RedisCancellationFlag, export_backup, export_sessions

from conftest import OWNER, OWNER_HASH, OWNER_ROOT, add_owner_account, md5


class FakeRedis:
    def __init__(self):
        self.store = {}

    def exists(self, key):
        return int(key in self.store)

    def set(self, key, value, ex=None):
        self.store[key] = value


def test_export_writes_one_json_line_per_record(wechat_backup, tmp_path):
    root = wechat_backup.finish()
    output = tmp_path / "out"

    (account,) = export_backup(root, output, options=ExportOptions(timezone="UTC"))

    assert account.usr_name == OWNER
    assert [report.usr_name for report in account.sessions] == ["wxid_alice", "123@chatroom"]
    assert not account.cancelled
    lines = (output / "Owner" / f"Ally_{md5('wxid_alice')[:8]}.jsonl").read_text(encoding="utf-8").splitlines()
    records = [json.loads(line) for line in lines]
    assert [record["values"]["message"] for record in records] == ["hello", "second", "third"]
    assert records[1]["values"]["alignment"] == "right"
    group = [json.loads(line) for line in (output / "Owner" / f"Ally、Bobby_{md5('123@chatroom')[:8]}.jsonl").read_text(encoding="utf-8").splitlines()]
    assert group[0]["values"]["name"] == "Bobby"


def test_export_refuses_encrypted_backups(builder, tmp_path):
    root = builder.finish(encrypted=True)

    with pytest.raises(UnsupportedBackupError):
        export_backup(root, tmp_path / "out")


def test_cancellation_propagates_to_every_session(wechat_backup, tmp_path):
    wechat_backup.finish()
    index = BackupIndex.load(wechat_backup.root)
    owner = Profile(usr_name=OWNER)
    shards = [f"{OWNER_ROOT}/DB/message_1.sqlite", f"{OWNER_ROOT}/DB/message_2.sqlite"]
    sessions = [
        Session(usr_name="wxid_alice", hash=md5("wxid_alice"), owner=owner, db_files=shards),
        Session(usr_name="123@chatroom", hash=md5("123@chatroom"), owner=owner, db_files=shards),
    ]
    event = threading.Event()
    seen = []

    def sink_factory(session, output_dir):
        def sink(batch):
            seen.append(session.usr_name)
            return False

        return sink

    reports = export_sessions(
        index,
        owner,
        ContactBook(),
        sessions,
        tmp_path / "out",
        options=ExportOptions(workers=1),
        cancel_event=event,
        sink_factory=sink_factory,
    )

    assert event.is_set()
    assert seen == ["wxid_alice"]
    assert [report.result.cancelled for report in reports] == [True, True]
    assert reports[1].result.emitted == 0


def test_json_lines_sink_honours_the_cancel_flag(tmp_path):
    from parsers.messages import MessageKind, NormalizedMessage

    event = threading.Event()
    sink = JsonLinesSink(tmp_path / "s" / "chat.jsonl", event)
    message = NormalizedMessage("msg", MessageKind.TEXT, {"message": "hi"})

    assert sink([message])
    event.set()
    assert not sink([message])
    sink.close()

    lines = (tmp_path / "s" / "chat.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0]) == {"name": "msg", "kind": "text", "values": {"message": "hi"}}


def test_redis_cancellation_flag():
    connection = FakeRedis()
    flag = RedisCancellationFlag(connection, "wechat_exporter:cancel:job1")

    assert not flag.is_set()
    flag.set()
    assert flag.is_set()


def test_export_job_uses_settings_and_redis_flag(wechat_backup, tmp_path, monkeypatch):
    root = wechat_backup.finish()
    connection = FakeRedis()
    connection.set("wechat_exporter:cancel:job1", "1")
    monkeypatch.setenv("WECHAT_EXPORTER_DOWNLOAD__ENABLED", "false")
    monkeypatch.setattr(tasks, "get_connection", lambda: connection)
    get_settings.cache_clear()
    try:
        summary = tasks.export_backup_job(str(root), str(tmp_path / "out"), None, "wechat_exporter:cancel:job1")
    finally:
        get_settings.cache_clear()

    (account,) = summary["accounts"]
    assert account["cancelled"]
    assert account["messages"] == 0


def test_sessions_with_the_same_display_name_get_separate_files(builder, tmp_path):
    add_owner_account(builder)
    builder.add_message_db(
        f"{OWNER_ROOT}/DB/message_1.sqlite",
        {"wxid_a": [(1, "from a", 1, 1, 1)], "wxid_b": [(2, "from b", 1, 1, 1)]},
    )
    builder.finish()
    index = BackupIndex.load(builder.root)
    owner = Profile(usr_name=OWNER)
    shards = [f"{OWNER_ROOT}/DB/message_1.sqlite"]
    sessions = [
        Session(usr_name=name, hash=md5(name), owner=owner, display_name="Alex", db_files=shards)
        for name in ("wxid_a", "wxid_b")
    ]
    output = tmp_path / "out"

    export_sessions(index, owner, ContactBook(), sessions, output, options=ExportOptions(workers=2))

    for name, text in (("wxid_a", "from a"), ("wxid_b", "from b")):
        (line,) = (output / f"Alex_{md5(name)[:8]}.jsonl").read_text(encoding="utf-8").splitlines()
        assert json.loads(line)["values"]["message"] == text


def test_interrupt_sets_the_flag_and_stops_queued_sessions(wechat_backup, tmp_path):
    wechat_backup.finish()
    index = BackupIndex.load(wechat_backup.root)
    owner = Profile(usr_name=OWNER)
    shards = [f"{OWNER_ROOT}/DB/message_1.sqlite", f"{OWNER_ROOT}/DB/message_2.sqlite"]
    sessions = [
        Session(usr_name=name, hash=md5(name), owner=owner, db_files=shards)
        for name in ("wxid_alice", "123@chatroom", "wxid_alice")
    ]
    event = threading.Event()
    written = []

    def sink_factory(session, output_dir):
        if not written:
            def interrupted(batch):
                written.append(session.usr_name)
                raise KeyboardInterrupt

            return interrupted
        # a session that started anyway waits for the flag, then must emit nothing
        event.wait(timeout=5)

        def sink(batch):
            written.append(session.usr_name)
            return True

        return sink

    with pytest.raises(KeyboardInterrupt):
        export_sessions(
            index,
            owner,
            ContactBook(),
            sessions,
            tmp_path / "out",
            options=ExportOptions(workers=1),
            cancel_event=event,
            sink_factory=sink_factory,
        )

    assert event.is_set()
    assert written == ["wxid_alice"]


def test_export_includes_group_container_sessions(wechat_backup, tmp_path):
    wechat_backup.add_sqlite(
        f"share/{OWNER_HASH}/session/session.db",
        "CREATE TABLE SessionAbstract (UsrName TEXT, CreateTime INTEGER, ConStrRes1 TEXT);",
        {"SessionAbstract": [("wxid_gina", 1800000000, "")]},
        domain=WECHAT_SHARE_DOMAIN,
    )
    root = wechat_backup.finish()

    (account,) = export_backup(root, tmp_path / "out", options=ExportOptions(timezone="UTC"))

    gina = account.sessions[0]
    assert gina.usr_name == "wxid_gina"
    assert gina.record_count == 0
    assert gina.result.emitted == 0


def test_share_index_is_none_without_group_files(wechat_backup):
    root = wechat_backup.finish()

    assert tasks.load_share_index(root) is None
