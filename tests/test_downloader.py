from __future__ import annotations

import requests

from core.services import HttpDownloader, NullDownloader


class FakeResponse:
    def __init__(self, chunks, status_error=None):
        self.chunks = chunks
        self.status_error = status_error

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_error:
            raise self.status_error

    def iter_content(self, chunk_size):
        return iter(self.chunks)


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def get(self, url, timeout, stream):
        self.calls.append((url, timeout, stream))
        return self.response


def test_null_downloader_never_fetches(tmp_path):
    assert NullDownloader().fetch("http://example.invalid/a.jpg", tmp_path / "a.jpg") is None


def test_http_downloader_streams_with_timeout(tmp_path, monkeypatch):
    downloader = HttpDownloader(timeout=3.5)
    session = FakeSession(FakeResponse([b"ab", b"cd"]))
    monkeypatch.setattr(downloader, "_session", lambda: session)

    path = downloader.fetch("https://example.invalid/a.jpg", tmp_path / "p" / "a.jpg")

    assert path.read_bytes() == b"abcd"
    assert session.calls == [("https://example.invalid/a.jpg", 3.5, True)]
    assert sorted(item.name for item in (tmp_path / "p").iterdir()) == ["a.jpg"]


def test_http_downloader_reports_failures_as_missing(tmp_path, monkeypatch):
    downloader = HttpDownloader()
    session = FakeSession(FakeResponse([], status_error=requests.HTTPError("404")))
    monkeypatch.setattr(downloader, "_session", lambda: session)

    assert downloader.fetch("https://example.invalid/a.jpg", tmp_path / "a.jpg") is None
    assert not (tmp_path / "a.jpg").exists()
    assert downloader.fetch("file:///etc/passwd", tmp_path / "b.jpg") is None


def test_http_downloader_keeps_an_existing_asset(tmp_path, monkeypatch):
    downloader = HttpDownloader()
    session = FakeSession(FakeResponse([b"new"]))
    monkeypatch.setattr(downloader, "_session", lambda: session)
    destination = tmp_path / "Portrait" / "alice.jpg"
    destination.parent.mkdir()
    destination.write_bytes(b"old")

    assert downloader.fetch("https://example.invalid/alice.jpg", destination) == destination
    assert destination.read_bytes() == b"old"
    assert session.calls == []


def test_http_downloader_ignores_another_writers_partial_file(tmp_path, monkeypatch):
    downloader = HttpDownloader()
    session = FakeSession(FakeResponse([b"full"]))
    monkeypatch.setattr(downloader, "_session", lambda: session)
    other = tmp_path / "Emoji" / "e.gif.part"
    other.parent.mkdir()
    other.write_bytes(b"half")

    path = downloader.fetch("https://example.invalid/e.gif", tmp_path / "Emoji" / "e.gif")

    assert path.read_bytes() == b"full"
    assert other.read_bytes() == b"half"
    assert sorted(item.name for item in other.parent.iterdir()) == ["e.gif", "e.gif.part"]


def test_http_downloader_removes_its_temp_file_on_failure(tmp_path, monkeypatch):
    class BrokenResponse(FakeResponse):
        def iter_content(self, chunk_size):
            yield b"ab"
            raise requests.ConnectionError("reset")

    downloader = HttpDownloader()
    monkeypatch.setattr(downloader, "_session", lambda: FakeSession(BrokenResponse([])))

    assert downloader.fetch("https://example.invalid/a.jpg", tmp_path / "d" / "a.jpg") is None
    assert list((tmp_path / "d").iterdir()) == []
