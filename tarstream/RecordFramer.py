import contextlib
import io
import logging
import os
import stat
from typing import IO, Optional

from .utils import FormatError, TruncationError, round_up

logger = logging.getLogger(__name__)

RECORD_SIZE = 512
# GNU tar and most other writers pad archives to blocks of 20 records, i.e., 10 KiB.
DEFAULT_BLOCKING_FACTOR = 20
SKIP_BUFFER_SIZE = 64 * 1024
# Corrupt base-256 size fields can announce more bytes than fit into an index-sized integer.
MAX_READ_SIZE = 16 * 1024 * 1024


def is_eof_record(record: Optional[bytes]) -> bool:
    """Missing and partial records also count as end-of-archive markers when looking ahead."""
    return not record or record.count(0) == len(record)


class RecordFramer:
    """
    Reads fixed-size records from a sequential byte source and keeps track of the number of consumed bytes.

    Header records and entry data are both consumed through this class so that the byte count
    stays exact, which is required to discard the padding up to the next block boundary after the
    end-of-archive marker.
    """

    def __init__(
        self, fileobj: IO[bytes], recordSize: int = RECORD_SIZE, blockingFactor: int = DEFAULT_BLOCKING_FACTOR
    ) -> None:
        if recordSize < RECORD_SIZE:
            raise ValueError(f"The record size must be at least {RECORD_SIZE} B to hold a TAR header!")
        if blockingFactor < 1:
            raise ValueError("The blocking factor must be positive!")

        self.fileobj = fileobj
        self.recordSize = recordSize
        self.blockSize = recordSize * blockingFactor
        self.bytesRead = 0
        # Offset of the last record returned by read_record. Used for diagnostic messages.
        self.recordOffset = 0
        self.atEof = False

    def read(self, size: int) -> bytes:
        """Reads until 'size' bytes have been gathered or the source is exhausted."""
        if size <= 0:
            return b''

        chunks = []
        remaining = size
        while remaining > 0:
            chunk = self.fileobj.read(min(remaining, MAX_READ_SIZE))
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)

        result = b''.join(chunks)
        self.bytesRead += len(result)
        return result

    def read_exactly(self, size: int, what: str = "data") -> bytes:
        offset = self.bytesRead
        result = self.read(size)
        if len(result) != size:
            raise TruncationError(
                f"Truncated TAR archive: expected {size} B of {what} at offset {offset} but got only {len(result)} B!"
            )
        return result

    def available(self) -> Optional[int]:
        """
        Returns the exact number of bytes left in the source if that can be determined cheaply, else None.
        This only works for plain OS files. Other objects like decompressors may forward fileno to the
        compressed file, whose size has nothing to do with the number of decompressed bytes.
        """
        raw = self.fileobj.raw if isinstance(self.fileobj, (io.BufferedReader, io.BufferedRandom)) else self.fileobj
        if not isinstance(raw, io.FileIO):
            return None

        with contextlib.suppress(OSError, ValueError):
            stats = os.fstat(raw.fileno())
            if stat.S_ISREG(stats.st_mode):
                return max(0, stats.st_size - self.fileobj.tell())
        return None

    def skip(self, size: int) -> int:
        """
        Returns the number of actually skipped bytes, which is smaller than 'size' only if the source is exhausted.
        """
        if size <= 0:
            return 0

        available = self.available()
        if available is not None:
            skipped = min(size, available)
            self.fileobj.seek(skipped, io.SEEK_CUR)
        else:
            skipped = 0
            while skipped < size:
                chunk = self.fileobj.read(min(size - skipped, SKIP_BUFFER_SIZE))
                if not chunk:
                    break
                skipped += len(chunk)

        self.bytesRead += skipped
        return skipped

    def skip_exactly(self, size: int, what: str = "data") -> None:
        offset = self.bytesRead
        skipped = self.skip(size)
        if skipped != size:
            raise TruncationError(
                f"Truncated TAR archive: tried to skip {size} B of {what} at offset {offset} "
                f"but only {skipped} B were left!"
            )

    def skip_padding(self, size: int) -> None:
        """Skips the bytes after 'size' data bytes up to the next record boundary."""
        padding = round_up(size, self.recordSize) - size
        if padding > 0:
            self.skip_exactly(padding, "record padding")

    def read_record(self) -> Optional[bytes]:
        """
        Returns the next record or None if the end of the archive has been reached.
        The end is signaled by a record filled with zeros, which should be followed by a second one.
        """
        if self.atEof:
            return None

        self.recordOffset = self.bytesRead
        record = self.read(self.recordSize)
        if not record:
            logger.warning(
                "The TAR archive ends at offset %d without an end-of-archive marker. Treating it as the end.",
                self.recordOffset,
            )
            self.atEof = True
            return None

        if len(record) != self.recordSize:
            raise FormatError(
                f"Truncated TAR archive: got only {len(record)} B of the {self.recordSize} B record "
                f"at offset {self.recordOffset}!"
            )

        if is_eof_record(record):
            logger.debug("Found end-of-archive marker at offset %d.", self.recordOffset)
            self.atEof = True
            self._try_to_consume_second_eof_record()
            self._consume_remainder_of_last_block()
            return None

        return record

    def _is_seekable(self) -> bool:
        seekable = getattr(self.fileobj, 'seekable', None)
        return bool(callable(seekable) and seekable())

    def _try_to_consume_second_eof_record(self) -> None:
        # Most writers append two zero records, but a single one is tolerated. Look ahead one record
        # and only consume it if it is the second marker.
        if self._is_seekable():
            position = self.fileobj.tell()
            record = self.read(self.recordSize)
            if not is_eof_record(record) and len(record) == self.recordSize:
                self.fileobj.seek(position)
                self.bytesRead -= len(record)
            return

        peek = getattr(self.fileobj, 'peek', None)
        if callable(peek):
            peeked = peek(self.recordSize)
            if len(peeked) >= self.recordSize:
                if is_eof_record(peeked[: self.recordSize]):
                    self.read(self.recordSize)
                return

        record = self.read(self.recordSize)
        if not is_eof_record(record) and len(record) == self.recordSize:
            logger.warning(
                "Discarding the non-zero record after the end-of-archive marker at offset %d "
                "because the source cannot rewind.",
                self.bytesRead - len(record),
            )

    def _consume_remainder_of_last_block(self) -> None:
        remainder = self.bytesRead % self.blockSize
        if remainder > 0:
            skipped = self.skip(self.blockSize - remainder)
            logger.debug("Skipped %d B of padding after the end-of-archive marker.", skipped)

    def close(self) -> None:
        self.fileobj.close()
