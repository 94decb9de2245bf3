"""
Value codec for cached payloads.

The store only ever sees strings. Compression is opt-in and transparent:
compressed payloads carry a prefix that valid JSON can never start with.
"""
import base64
import json
import zlib
from typing import Any

COMPRESSED_PREFIX = "z:"


class JsonCodec:
    """Encode values as JSON text, optionally zlib-compressed."""

    def __init__(self, compress: bool = False, level: int = 6):
        self.compress = compress
        self.level = level

    def encode(self, value: Any) -> str:
        text = json.dumps(value, sort_keys=True, ensure_ascii=False)
        if not self.compress:
            return text
        packed = zlib.compress(text.encode("utf-8"), self.level)
        return COMPRESSED_PREFIX + base64.b64encode(packed).decode("ascii")

    def decode(self, payload: str) -> Any:
        """
        Decode a payload written by encode().

        Raises:
            ValueError: If the payload is not valid JSON or compressed JSON
        """
        if payload.startswith(COMPRESSED_PREFIX):
            try:
                raw = zlib.decompress(base64.b64decode(payload[len(COMPRESSED_PREFIX):]))
            except (zlib.error, ValueError) as e:
                raise ValueError(f"Corrupt compressed payload: {e}") from e
            payload = raw.decode("utf-8")
        return json.loads(payload)
