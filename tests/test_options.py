from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import AppSettings, ExportOptions, ParsingOption


def test_flags_round_trip():
    flags = ParsingOption.DESC | ParsingOption.IGNORE_IMAGE | ParsingOption.ICON_IN_SESSION

    options = ExportOptions.from_flags(flags)

    assert options.descending
    assert options.ignore_image
    assert options.icon_in_session
    assert not options.ignore_audio
    assert options.to_flags() == int(flags)


def test_text_mode_covers_every_media_bit():
    options = ExportOptions.from_flags(ParsingOption.TEXT_MODE | ParsingOption.DESC)

    assert options.text_mode
    assert options.ignore_avatar and options.ignore_html_escape
    assert options.skips_media("ignore_video")
    assert options.to_flags() == ParsingOption.TEXT_MODE | ParsingOption.DESC


def test_overrides_apply_on_top_of_flags():
    options = ExportOptions.from_flags(0, workers=4, max_forward_depth=2)

    assert options.workers == 4
    assert options.max_forward_depth == 2
    assert not options.skips_media("ignore_image")


def test_options_are_immutable_and_validated():
    options = ExportOptions()

    with pytest.raises(ValidationError):
        options.descending = True
    with pytest.raises(ValidationError):
        ExportOptions(max_forward_depth=0)
    assert ExportOptions(timezone="  ").timezone is None


def test_settings_read_nested_environment(monkeypatch):
    monkeypatch.setenv("WECHAT_EXPORTER_EXPORT__DESCENDING", "true")
    monkeypatch.setenv("WECHAT_EXPORTER_REDIS__QUEUE_NAME", "wechat")

    settings = AppSettings()

    assert settings.export.descending
    assert settings.redis.queue_name == "wechat"
    assert settings.download.enabled
