import json
import re
from typing import Any, Optional


def compact_json(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"))


def ndjson_line(obj: Any) -> bytes:
    """Encode one unit of a newline-delimited JSON stream."""
    return (compact_json(obj) + "\n").encode("utf-8")


class ServerSentEvent:
    """
    Helper class to format one ``data:`` frame of a Server-Sent Events stream.

    Dicts and lists are sent as compact JSON, everything else via ``str``.
    """

    _LINE_SEP_EXPR = re.compile(r"\r\n|\r|\n")
    DEFAULT_SEPARATOR = "\n"
    TAG_DATA = "data: "

    def __init__(self, data: Any, sep: Optional[str] = None) -> None:
        if sep is not None and sep not in ("\r\n", "\r", "\n"):
            raise ValueError(f"sep must be one of: \\r\\n, \\r, \\n, got: {sep}")
        if isinstance(data, (dict, list)):
            data = compact_json(data)
        self.data = str(data)
        self._sep = sep if sep is not None else self.DEFAULT_SEPARATOR

    def encode(self) -> bytes:
        # Break multi-line data into multiple data: lines
        lines = [
            f"{self.TAG_DATA}{chunk}{self._sep}"
            for chunk in self._LINE_SEP_EXPR.split(self.data)
        ]
        return ("".join(lines) + self._sep).encode("utf-8")
