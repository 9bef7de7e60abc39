from __future__ import annotations

from enum import IntFlag

from pydantic import BaseModel, ConfigDict, Field, validator


class ParsingOption(IntFlag):
    IGNORE_AVATAR = 1 << 0
    IGNORE_AUDIO = 1 << 1
    IGNORE_IMAGE = 1 << 2
    IGNORE_VIDEO = 1 << 3
    IGNORE_EMOJI = 1 << 4
    IGNORE_FILE = 1 << 5
    IGNORE_CARD = 1 << 6
    IGNORE_SHARING = 1 << 7
    IGNORE_HTML_ENC = 1 << 8
    TEXT_MODE = 0xFFFF
    DESC = 1 << 16
    ICON_IN_SESSION = 1 << 17


_FLAG_FIELDS = {
    "ignore_avatar": ParsingOption.IGNORE_AVATAR,
    "ignore_audio": ParsingOption.IGNORE_AUDIO,
    "ignore_image": ParsingOption.IGNORE_IMAGE,
    "ignore_video": ParsingOption.IGNORE_VIDEO,
    "ignore_emoji": ParsingOption.IGNORE_EMOJI,
    "ignore_file": ParsingOption.IGNORE_FILE,
    "ignore_card": ParsingOption.IGNORE_CARD,
    "ignore_sharing": ParsingOption.IGNORE_SHARING,
    "ignore_html_escape": ParsingOption.IGNORE_HTML_ENC,
    "descending": ParsingOption.DESC,
    "icon_in_session": ParsingOption.ICON_IN_SESSION,
}


class ExportOptions(BaseModel):
    """Immutable options handed to the parsers for one export run."""

    model_config = ConfigDict(frozen=True)

    descending: bool = False
    ignore_avatar: bool = False
    ignore_audio: bool = False
    ignore_image: bool = False
    ignore_video: bool = False
    ignore_emoji: bool = False
    ignore_file: bool = False
    ignore_card: bool = False
    ignore_sharing: bool = False
    ignore_html_escape: bool = False
    text_mode: bool = False
    icon_in_session: bool = False
    detailed_contacts: bool = True
    cell_data_version: str | None = None
    max_forward_depth: int = Field(default=8, ge=1)
    download_timeout: float = Field(default=10.0, gt=0)
    time_format: str = "%Y-%m-%d %H:%M:%S"
    timezone: str | None = None
    workers: int = Field(default=1, ge=1)

    @validator("timezone")
    def blank_timezone_is_local(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @classmethod
    def from_flags(cls, flags: int, **overrides) -> "ExportOptions":
        flags = ParsingOption(flags)
        values = {name: bool(flags & bit) for name, bit in _FLAG_FIELDS.items()}
        values["text_mode"] = (flags & ParsingOption.TEXT_MODE) == ParsingOption.TEXT_MODE
        values.update(overrides)
        return cls(**values)

    def to_flags(self) -> int:
        flags = ParsingOption(0)
        for name, bit in _FLAG_FIELDS.items():
            if getattr(self, name):
                flags |= bit
        if self.text_mode:
            flags |= ParsingOption.TEXT_MODE
        return int(flags)

    def skips_media(self, attribute: str) -> bool:
        """True when ``attribute`` (e.g. ``ignore_image``) or text mode suppresses that media."""
        return self.text_mode or bool(getattr(self, attribute))
