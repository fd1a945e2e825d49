"""Server-sent event decoding for gateway streams.

The gateway streams newline-delimited ``data: <json>`` lines terminated by
``data: [DONE]``. Byte chunks may split a line, or a multi-byte UTF-8
character, anywhere; the decoder buffers until a full line is available.
"""

import codecs
import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from ..types import CancelToken
from .errors import MalformedFrameError
from .events import DoneSentinel

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_PAYLOAD = "[DONE]"

Frame = Union[Dict[str, Any], DoneSentinel]


class StreamDecoder:
    """Incremental decoder from byte chunks to JSON frames.

    One instance per response. After the done sentinel, further input is
    ignored.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.frames = 0
        self.malformed = 0

    def feed(self, chunk: bytes) -> List[Frame]:
        """Decode a chunk and return the frames completed by it."""
        if self.done or not chunk:
            return []
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._decode_lines(lines)

    def finish(self) -> List[Frame]:
        """Flush the trailing partial line at end of stream."""
        if self.done:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._decode_lines([tail]) if tail else []

    def _decode_lines(self, lines: List[str]) -> List[Frame]:
        frames: List[Frame] = []
        for line in lines:
            payload = self._payload(line)
            if payload is None:
                continue
            if payload == DONE_PAYLOAD:
                self.done = True
                frames.append(DoneSentinel())
                break
            try:
                frames.append(self._parse_payload(payload))
            except MalformedFrameError as exc:
                self.malformed += 1
                logger.debug("Skipping frame: %s", exc)
        self.frames += len(frames)
        return frames

    @staticmethod
    def _payload(line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return None
        payload = line[len(DATA_PREFIX):]
        if payload.startswith(" "):
            payload = payload[1:]
        return payload.strip()

    @staticmethod
    def _parse_payload(payload: str) -> Dict[str, Any]:
        try:
            data = json.loads(payload)
        except ValueError:
            raise MalformedFrameError(payload)
        if not isinstance(data, dict):
            raise MalformedFrameError(payload)
        return data


def iter_frames(
    chunks: Iterable[bytes],
    cancel_token: Optional[CancelToken] = None,
    decoder: Optional[StreamDecoder] = None,
) -> Iterator[Frame]:
    """Yield frames from an iterable of byte chunks.

    Stops after the done sentinel, at the end of the chunks, or when the
    token is cancelled (raising CancelledException).
    """
    decoder = decoder or StreamDecoder()
    for chunk in chunks:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        for frame in decoder.feed(chunk):
            yield frame
        if decoder.done:
            return
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()
    for frame in decoder.finish():
        yield frame
