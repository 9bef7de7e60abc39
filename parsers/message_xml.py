"""Accessors for the XML payloads embedded in WeChat message rows."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional
from xml.etree import ElementTree as ET


def parse_xml(text: str) -> ET.Element:
    start = text.find("<")
    if start < 0:
        raise ET.ParseError("no XML element in message body")
    return ET.fromstring(text[start:].strip())


def _text(element: Optional[ET.Element], path: str) -> str:
    if element is None:
        return ""
    return (element.findtext(path) or "").strip()


def _int(value: str, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(slots=True)
class AppMessage:
    type: int
    title: str = ""
    des: str = ""
    url: str = ""
    thumb_url: str = ""
    file_ext: str = ""
    total_len: int = 0
    record_item: str = ""
    app_name: str = ""
    refer_name: str = ""
    refer_content: str = ""
    emoji_md5: str = ""


def parse_app_message(text: str) -> AppMessage:
    root = parse_xml(text)
    appmsg = root if root.tag == "appmsg" else root.find("appmsg")
    if appmsg is None:
        raise ET.ParseError("missing <appmsg>")
    return AppMessage(
        type=_int(_text(appmsg, "type")),
        title=_text(appmsg, "title"),
        des=_text(appmsg, "des"),
        url=_text(appmsg, "url"),
        thumb_url=_text(appmsg, "thumburl"),
        file_ext=_text(appmsg, "appattach/fileext"),
        total_len=_int(_text(appmsg, "appattach/totallen")),
        record_item=appmsg.findtext("recorditem") or "",
        app_name=_text(root, "appinfo/appname") or _text(appmsg, "sourcedisplayname"),
        refer_name=_text(appmsg, "refermsg/displayname"),
        refer_content=_text(appmsg, "refermsg/content"),
        emoji_md5=_text(appmsg, "appattach/emoticonmd5"),
    )


def parse_emoji(text: str) -> dict[str, str]:
    element = parse_xml(text).find(".//emoji")
    if element is None:
        raise ET.ParseError("missing <emoji>")
    return {
        "md5": element.get("md5", ""),
        "cdnurl": element.get("cdnurl", ""),
        "thumburl": element.get("thumburl", ""),
    }


def parse_card(text: str) -> dict[str, str]:
    root = parse_xml(text)
    return {
        "username": root.get("username", ""),
        "nickname": root.get("nickname", ""),
        "portrait": root.get("bigheadimgurl", "") or root.get("smallheadimgurl", ""),
        "alias": root.get("alias", ""),
    }


def parse_voice_length(text: str) -> int:
    """Voice duration in milliseconds; 0 when the body carries no voicemsg."""
    try:
        element = parse_xml(text).find(".//voicemsg")
    except ET.ParseError:
        return 0
    if element is None:
        return 0
    return _int(element.get("voicelength", "0"))


def parse_location(text: str) -> dict[str, str]:
    element = parse_xml(text).find(".//location")
    if element is None:
        raise ET.ParseError("missing <location>")
    return {
        "x": element.get("x", ""),
        "y": element.get("y", ""),
        "label": element.get("label", ""),
        "poiname": element.get("poiname", ""),
    }


def system_text(text: str) -> str:
    """Plain text of a system notice; XML notices (revokes, tickles) are flattened."""
    stripped = text.strip()
    if not stripped.startswith("<"):
        return stripped
    try:
        root = parse_xml(stripped)
    except ET.ParseError:
        return stripped
    for path in ("revokemsg/content", ".//content", ".//template"):
        value = _text(root, path)
        if value:
            return value
    return "".join(root.itertext()).strip()


@dataclass(slots=True)
class RecordItem:
    datatype: int
    dataid: str = ""
    datadesc: str = ""
    datatitle: str = ""
    datafmt: str = ""
    source_name: str = ""
    source_time: str = ""
    src_create_time: int = 0
    source_head_url: str = ""
    link: str = ""
    # the nested <recordinfo> element, or its escaped text parsed on demand
    nested: ET.Element | str | None = None


@dataclass(slots=True)
class RecordInfo:
    title: str = ""
    desc: str = ""
    items: List[RecordItem] = field(default_factory=list)


def parse_record_info(source: str | ET.Element) -> RecordInfo:
    root = parse_xml(source) if isinstance(source, str) else source
    if root.tag != "recordinfo":
        found = root.find(".//recordinfo")
        if found is None:
            raise ET.ParseError("missing <recordinfo>")
        root = found
    info = RecordInfo(title=_text(root, "title"), desc=_text(root, "desc"))
    datalist = root.find("datalist")
    if datalist is None:
        return info
    for element in datalist.findall("dataitem"):
        info.items.append(
            RecordItem(
                datatype=_int(element.get("datatype", "0")),
                dataid=element.get("dataid", ""),
                datadesc=_text(element, "datadesc"),
                datatitle=_text(element, "datatitle"),
                datafmt=_text(element, "datafmt").lstrip("."),
                source_name=_text(element, "sourcename"),
                source_time=_text(element, "sourcetime"),
                src_create_time=_int(_text(element, "srcMsgCreateTime")),
                source_head_url=_text(element, "sourceheadurl"),
                link=_text(element, "link") or _text(element, "weburlitem/link"),
                nested=_nested_record(element),
            )
        )
    return info


def _nested_record(element: ET.Element) -> ET.Element | str | None:
    record_xml = element.find("recordxml")
    if record_xml is None:
        return None
    child = record_xml.find("recordinfo")
    if child is not None:
        return child
    if record_xml.text and record_xml.text.strip():
        return record_xml.text
    return None
