"""
MODULE OVERVIEW:
Turns raw `text/event-stream` bytes into `StreamEvent`s.

WHAT IS HAPPENING HERE:
The network hands us chunks of arbitrary size. A chunk can end in the middle of
a line, or even in the middle of a multi-byte UTF-8 character. So we keep two
carry-overs between calls: the incremental UTF-8 decoder state and the last,
unfinished line.

Each complete line is one of:
    event: <type>     -> pending event type
    data: <payload>   -> appended to the pending payload (joined with "\n")
    id: <id>          -> pending id
A pending payload becomes an event as soon as the line stream moves past it:
on a blank line, on the `event:` line that opens the next record, or at the
end of the `feed()` pass that read its last line. A blank line is therefore
never required, and a feed that sends bare `data:` lines gets one event per
pass instead of one ever-growing payload.

The price of the end-of-pass flush: when a chunk edge falls after a record's
first `data:` line but before the record is over, the part already read is
emitted at that edge, and later `data:` lines become a separate event.
Splitting the bytes anywhere else (inside a line, inside a UTF-8 character,
between records, before the first `data:` line) never changes the events that
come out.
"""
import codecs
import json
from typing import Any

from ssemux.shared.models import StreamEvent

DEFAULT_EVENT_TYPE = "message"


def parse_payload(raw: str) -> Any:
    """JSON when it parses, the raw string otherwise. Decided once, never retried."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class FrameDecoder:
    def __init__(self):
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._tail = ""
        self._reset_pending()

    def _reset_pending(self) -> None:
        self._event_type = DEFAULT_EVENT_TYPE
        self._data: str | None = None
        self._event_id: str | None = None

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        self._tail += self._text.decode(chunk)
        lines = self._tail.split("\n")
        # The last fragment may be incomplete; keep it for the next chunk
        self._tail = lines.pop()

        events: list[StreamEvent] = []
        for line in lines:
            self._consume_line(line.rstrip("\r"), events)

        # end of the pass: whatever payload the complete lines built goes out now
        if self._data is not None:
            self._emit_pending(events)
            self._reset_pending()
        return events

    def flush(self) -> list[StreamEvent]:
        """End of stream. The unfinished tail is dropped; a line without its newline is never parsed."""
        events: list[StreamEvent] = []
        self._emit_pending(events)
        self._reset_pending()
        self._tail = ""
        return events

    def _consume_line(self, line: str, out: list[StreamEvent]) -> None:
        if not line:
            self._emit_pending(out)
            self._reset_pending()
        elif line.startswith("event:"):
            if self._data is not None:
                self._emit_pending(out)
                self._reset_pending()
            self._event_type = line[6:].strip() or DEFAULT_EVENT_TYPE
        elif line.startswith("data:"):
            value = line[5:].strip()
            self._data = value if self._data is None else f"{self._data}\n{value}"
        elif line.startswith("id:"):
            self._event_id = line[3:].strip() or None
        # comments (":keep-alive") and unknown fields are ignored

    def _emit_pending(self, out: list[StreamEvent]) -> None:
        # an empty payload never becomes an event
        if self._data:
            out.append(
                StreamEvent(
                    type=self._event_type,
                    data=parse_payload(self._data),
                    id=self._event_id,
                )
            )
