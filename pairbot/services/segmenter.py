from __future__ import annotations

import logging
from typing import AsyncIterable, AsyncIterator

from pairbot.core.fmt import sanitize_markdown
from pairbot.core.models import StreamSegment

logger = logging.getLogger(__name__)

SEGMENT_MARKER = "[SEGMENT_COMPLETE]"
FINAL_MARKER = "[ANALYSIS_COMPLETE]"


class StreamSegmenter:
    """Turns an incremental token stream into marker-delimited, sanitized segments.

    A segmenter instance handles one stream; ``transcript`` keeps every token received.
    """

    def __init__(self, soft_marker: str = SEGMENT_MARKER, hard_marker: str = FINAL_MARKER) -> None:
        if not soft_marker or not hard_marker or soft_marker == hard_marker:
            raise ValueError("segment markers must be distinct non-empty strings")
        self.soft_marker = soft_marker
        self.hard_marker = hard_marker
        self.transcript = ""
        self.emitted = 0
        self.finished = False

    def _next_marker(self, buffer: str) -> tuple[int, str] | None:
        best: tuple[int, str] | None = None
        for marker in (self.soft_marker, self.hard_marker):
            idx = buffer.find(marker)
            if idx != -1 and (best is None or idx < best[0]):
                best = (idx, marker)
        return best

    def _strip_markers(self, text: str) -> str:
        return text.replace(self.soft_marker, "").replace(self.hard_marker, "")

    async def consume(self, token_stream: AsyncIterable[str]) -> AsyncIterator[StreamSegment]:
        iterator = token_stream.__aiter__()
        current = ""
        try:
            async for chunk in iterator:
                if not chunk:
                    continue
                self.transcript += chunk
                current += chunk
                while True:
                    hit = self._next_marker(current)
                    if hit is None:
                        break
                    pos, marker = hit
                    is_final = marker == self.hard_marker
                    content = sanitize_markdown(current[:pos].strip())
                    current = current[pos + len(marker) :]
                    if content:
                        segment = StreamSegment(content=content, is_final=is_final, sequence_index=self.emitted)
                        self.emitted += 1
                        logger.debug(
                            "segment_emitted",
                            extra={"event": "segment_emitted", "sequence_index": segment.sequence_index},
                        )
                        yield segment
                    if is_final:
                        self.finished = True
                        return
            if current.strip():
                logger.info(
                    "segment_discarded",
                    extra={"event": "segment_discarded", "count": len(self._strip_markers(current))},
                )
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
