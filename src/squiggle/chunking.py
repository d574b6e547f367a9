from __future__ import annotations

from collections.abc import Iterable

from .models import Chunk, Range
from .ranges import clamp, merge
from .segmentation import DEFAULT_SEGMENTER, Segmenter

DEFAULT_SINGLESHOT_MAX = 4500
DEFAULT_TARGET_CHARS = 3000
DEFAULT_OVERLAP_CHARS = 250


def pack_chunks(
    text: str,
    prose_ranges: Iterable[Range],
    target_size: int = DEFAULT_TARGET_CHARS,
    overlap_chars: int = DEFAULT_OVERLAP_CHARS,
    *,
    singleshot_max: int = DEFAULT_SINGLESHOT_MAX,
    segmenter: Segmenter = DEFAULT_SEGMENTER,
) -> list[Chunk]:
    """Split ``text`` into sentence-aligned request chunks restricted to prose.

    Short texts are sent whole.  Longer texts are packed per prose range: consecutive
    sentences are merged until the chunk reaches ``target_size``; each chunk carries up to
    ``overlap_chars`` of preceding text from the same prose range as a read-only prefix.
    Offsets are absolute into ``text``.
    """
    n = len(text)
    if n <= singleshot_max:
        return [Chunk(start=0, end=n, content=text, prefix_len=0)]

    target = max(1, int(target_size))
    overlap = max(0, int(overlap_chars))
    chunks: list[Chunk] = []
    for prose in merge(clamp(r, n) for r in prose_ranges):
        if prose.end <= prose.start:
            continue
        sentences = [s.shift(prose.start) for s in segmenter.sentences(text[prose.start : prose.end])]
        i = 0
        while i < len(sentences):
            start = sentences[i].start
            end = sentences[i].end
            j = i + 1
            while j < len(sentences) and end - start < target:
                end = sentences[j].end
                j += 1
            prefix_start = max(prose.start, start - overlap, 0)
            chunks.append(
                Chunk(
                    start=start,
                    end=end,
                    content=text[prefix_start:end],
                    prefix_len=start - prefix_start,
                )
            )
            i = j
    return chunks
