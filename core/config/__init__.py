from .options import ExportOptions, ParsingOption
from .settings import AppSettings, get_settings

__all__ = ["AppSettings", "ExportOptions", "ParsingOption", "get_settings"]
