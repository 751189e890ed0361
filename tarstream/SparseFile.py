import dataclasses
import io
import logging
from collections.abc import Sequence
from typing import Callable

from .utils import FixedRawIOBase, FormatError, TruncationError, overrides

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class SparseSegment:
    # fmt: off
    isHole     : bool
    # Offset into the stored data region of the entry. Unused for holes.
    dataOffset : int
    length     : int
    # fmt: on


def build_sparse_segments(
    sparseMap: Sequence[tuple[int, int]], realSize: int, name: str = ''
) -> list[SparseSegment]:
    """
    Converts a sparse map of (offset, size) pairs describing the stored data chunks into a list of
    alternating holes and data segments, which concatenated have exactly 'realSize' bytes.

    Examples:
        sparseMap = [(0, 0), (100, 50), (300, 20)], realSize = 320
            -> hole of 100 B, 50 B of data, hole of 200 B, 20 B of data
        sparseMap = [(0, 512)], realSize = 1024
            -> 512 B of data, hole of 512 B
    """
    segments: list[SparseSegment] = []
    position = 0
    dataOffset = 0
    for offset, size in sparseMap:
        # GNU tar pads the fixed number of sparse structures in the header with zeros.
        if offset == 0 and size == 0:
            continue
        if offset < 0 or size < 0:
            raise FormatError(f"Corrupted sparse map for '{name}': negative offset or size in {(offset, size)}!")
        if offset < position:
            raise FormatError(
                f"Corrupted sparse map for '{name}': data chunk at offset {offset} starts before the end "
                f"of the previous chunk at {position}. The sparse map overlaps or is not sorted!"
            )

        # Only store non-empty segments, or else reading would have to skip over them to not return an
        # empty result before the end of the file has been reached.
        if offset > position:
            segments.append(SparseSegment(True, 0, offset - position))
        if size > 0:
            segments.append(SparseSegment(False, dataOffset, size))
            dataOffset += size
        position = offset + size

    if position > realSize:
        raise FormatError(
            f"Corrupted sparse map for '{name}': data chunks end at {position}, behind the real file size {realSize}!"
        )
    if position < realSize:
        segments.append(SparseSegment(True, 0, realSize - position))

    return segments


class RawSparseFile(FixedRawIOBase):
    """
    A sequential file abstraction joining synthesized zero runs and data segments, which are consumed
    in order from the underlying stream by the given read and skip callbacks.
    """

    def __init__(
        self,
        segments: Sequence[SparseSegment],
        rawRead: Callable[[int], bytes],
        rawSkip: Callable[[int], int],
    ) -> None:
        """
        rawRead: Function which returns up to the requested number of bytes from the stored data region.
                 Less bytes may only be returned at the end of the underlying stream.
        rawSkip: Function which skips up to the requested number of bytes and returns the skipped amount.
        """
        super().__init__()

        for segment in segments:
            assert segment.length > 0, "Empty segments must be filtered out."

        self.segments = list(segments)
        self.rawRead = rawRead
        self.rawSkip = rawSkip
        self.size = sum(segment.length for segment in self.segments)
        self.offset = 0
        # Index of the current segment and offset inside it.
        self.index = 0
        self.offsetInSegment = 0

    def __enter__(self):
        return self

    def __exit__(self, exception_type, exception_value, exception_traceback):
        self.close()

    @overrides(io.RawIOBase)
    def seekable(self) -> bool:
        return False

    @overrides(io.RawIOBase)
    def readable(self) -> bool:
        return True

    @overrides(io.RawIOBase)
    def tell(self) -> int:
        return self.offset

    def _advance(self, size: int) -> None:
        self.offset += size
        self.offsetInSegment += size
        if self.offsetInSegment >= self.segments[self.index].length:
            self.index += 1
            self.offsetInSegment = 0

    def _read1(self, size: int) -> bytes:
        """Reads from the current segment only."""
        segment = self.segments[self.index]
        toRead = min(size, segment.length - self.offsetInSegment)
        if segment.isHole:
            result = b"\x00" * toRead
        else:
            result = self.rawRead(toRead)
            if len(result) < toRead:
                raise TruncationError(
                    f"Truncated TAR archive: sparse data segment at data offset "
                    f"{segment.dataOffset + self.offsetInSegment} ended after {len(result)} of {toRead} B!"
                )
        self._advance(len(result))
        return result

    @overrides(io.RawIOBase)
    def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise ValueError("A closed file can't be read from!")

        if size < 0:
            size = self.size - self.offset

        # Read across segment boundaries in one call so that callers are not surprised by short reads.
        chunks = []
        remaining = size
        while remaining > 0 and self.index < len(self.segments):
            chunk = self._read1(remaining)
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def skip(self, size: int) -> int:
        if self.closed:
            raise ValueError("A closed file can't be skipped in!")

        skipped = 0
        while skipped < size and self.index < len(self.segments):
            segment = self.segments[self.index]
            toSkip = min(size - skipped, segment.length - self.offsetInSegment)
            if not segment.isHole:
                actuallySkipped = self.rawSkip(toSkip)
                if actuallySkipped != toSkip:
                    raise TruncationError(
                        f"Truncated TAR archive: could only skip {actuallySkipped} of {toSkip} B in the sparse data "
                        f"segment at data offset {segment.dataOffset + self.offsetInSegment}!"
                    )
            self._advance(toSkip)
            skipped += toSkip
        return skipped
