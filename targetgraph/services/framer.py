from __future__ import annotations

import json
from dataclasses import dataclass

_DELIMITER = b"\n\n"


@dataclass(frozen=True)
class SseFrame:
    event: str
    data: str

    def json(self) -> object:
        return json.loads(self.data)


def encode_sse(event: str, payload: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


def parse_sse_block(block: str) -> SseFrame | None:
    event = "message"
    data_lines: list[str] = []
    for line in block.split("\n"):
        line = line.rstrip("\r")
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value.strip() or "message"
        elif name == "data":
            data_lines.append(value)
    if not data_lines:
        return None
    return SseFrame(event=event, data="\n".join(data_lines))


class SseFramer:
    """Reassembles SSE frames from arbitrarily split byte chunks.

    Bytes are buffered and only cut at the blank-line delimiter, so a
    delimiter or a multi-byte character split across reads is handled.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._carry = b""

    def feed(self, chunk: bytes | str) -> list[SseFrame]:
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        data = self._carry + chunk
        # A trailing CR may be the first half of a CRLF split across reads.
        self._carry = b"\r" if data.endswith(b"\r") else b""
        if self._carry:
            data = data[:-1]
        self._buffer.extend(data.replace(b"\r\n", b"\n"))
        frames: list[SseFrame] = []
        while True:
            cut = self._buffer.find(_DELIMITER)
            if cut < 0:
                break
            block = bytes(self._buffer[:cut])
            del self._buffer[: cut + len(_DELIMITER)]
            frame = parse_sse_block(block.decode("utf-8", errors="replace"))
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[SseFrame]:
        self._buffer.extend(self._carry)
        self._carry = b""
        if not self._buffer.strip():
            self._buffer.clear()
            return []
        block = bytes(self._buffer)
        self._buffer.clear()
        frame = parse_sse_block(block.decode("utf-8", errors="replace"))
        return [frame] if frame is not None else []
