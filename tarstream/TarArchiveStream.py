import io
import logging
import tarfile
import types
from collections.abc import Iterator, Mapping
from typing import IO, Optional

from .ExtensionResolver import ExtensionResolver
from .RecordFramer import DEFAULT_BLOCKING_FACTOR, RECORD_SIZE, RecordFramer
from .SparseFile import RawSparseFile
from .TarHeader import TarEntry
from .utils import FixedRawIOBase, IllegalUseError, TruncationError, overrides, saturate_int32

logger = logging.getLogger(__name__)


class TarArchiveStream:
    """
    Sequential reader for TAR archives. It works on non-seekable sources, e.g., pipes or decompressors,
    because it never seeks backwards except for a one-record lookahead after the end-of-archive marker.

    Example:

        with TarArchiveStream(open('archive.tar', 'rb')) as stream:
            for entry in stream:
                if entry.is_file():
                    data = stream.read()

    The data of the current entry is only accessible until next_entry is called. Sparse files are
    returned with their holes filled with zeros.
    """

    def __init__(
        self,
        fileobj: IO[bytes],
        recordSize: int = RECORD_SIZE,
        blockingFactor: int = DEFAULT_BLOCKING_FACTOR,
        encoding: str = tarfile.ENCODING,
        lenient: bool = False,
    ) -> None:
        """
        fileobj: Sequential byte source. It will be closed when this stream is closed.
        recordSize: Size of one record. Headers are always 512 B long but some writers use larger records.
        blockingFactor: Number of records per block. The padding after the end-of-archive marker is
                        discarded up to the next block boundary.
        encoding: Encoding for names in the static header fields and for hdrcharset=BINARY PAX records.
        lenient: If true, malformed numeric header fields are replaced with TarHeader.UNKNOWN
                 instead of raising a FormatError.
        """
        self.framer = RecordFramer(fileobj, recordSize=recordSize, blockingFactor=blockingFactor)
        self.resolver = ExtensionResolver(self.framer, encoding, lenient=lenient)
        self.encoding = encoding
        self.lenient = lenient

        # Archive-wide defaults, which are only reset when creating a new stream.
        self._globalPaxHeaders: dict[str, str] = {}
        self._entry: Optional[TarEntry] = None
        self._sparseFile: Optional[RawSparseFile] = None
        # Logical offset in the current entry, i.e., after reconstructing sparse holes.
        self._entryOffset = 0
        # Bytes left in the data region of the current entry as stored in the archive.
        self._rawRemaining = 0
        self._reachedEnd = False
        self._closed = False
        # Only set when the stream owns a compressed file below the decompressing fileobj.
        self.rawFileObject: Optional[IO[bytes]] = None

    def __enter__(self):
        return self

    def __exit__(self, exception_type, exception_value, exception_traceback):
        self.close()

    def __iter__(self) -> Iterator[TarEntry]:
        while (entry := self.next_entry()) is not None:
            yield entry

    @property
    def current_entry(self) -> Optional[TarEntry]:
        return self._entry

    @property
    def bytes_read(self) -> int:
        return self.framer.bytesRead

    @property
    def global_pax_headers(self) -> Mapping[str, str]:
        return types.MappingProxyType(self._globalPaxHeaders)

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_closed(self) -> None:
        if self._closed:
            raise ValueError("I/O operation on a closed TAR stream!")

    def _close_sparse_file(self) -> None:
        if self._sparseFile is not None:
            self._sparseFile.close()
            self._sparseFile = None

    def _finish_entry(self) -> None:
        """Skips the unread data and padding of the current entry to position the source at the next header."""
        entry = self._entry
        assert entry is not None
        self._close_sparse_file()

        if not entry.is_directory():
            self.framer.skip_exactly(self._rawRemaining, f"data of '{entry.name}'")
            self.framer.skip_padding(entry.size)
        self._rawRemaining = 0
        self._entryOffset = 0

    def next_entry(self) -> Optional[TarEntry]:
        """
        Skips the remainder of the current entry and returns the next one.
        Returns None when the end of the archive has been reached.
        """
        self._check_closed()
        if self._reachedEnd:
            return None

        if self._entry is not None:
            self._finish_entry()
            self._entry = None

        resolved = self.resolver.resolve(self._globalPaxHeaders)
        if resolved is None:
            logger.debug("Reached the end of the archive after %d B.", self.framer.bytesRead)
            self._reachedEnd = True
            return None

        entry = resolved.entry
        self._entry = entry
        self._entryOffset = 0
        self._rawRemaining = entry.size - resolved.consumedBytes
        if resolved.segments is not None:
            self._sparseFile = RawSparseFile(resolved.segments, self._read_raw, self._skip_raw)
            logger.debug(
                "Reconstructing sparse file '%s' with %d B from %d segments.",
                entry.name,
                entry.realsize,
                len(resolved.segments),
            )
        return entry

    def _read_raw(self, size: int) -> bytes:
        data = self.framer.read(min(size, self._rawRemaining))
        self._rawRemaining -= len(data)
        return data

    def _skip_raw(self, size: int) -> int:
        skipped = self.framer.skip(min(size, self._rawRemaining))
        self._rawRemaining -= skipped
        return skipped

    def _remaining(self) -> int:
        """Returns the number of logical bytes left to read and checks whether reading is allowed."""
        self._check_closed()
        if self._entry is None:
            if self._reachedEnd:
                return 0
            raise IllegalUseError("No current TAR entry. Call next_entry first!")
        if self._entry.is_directory():
            return 0
        return max(0, self._entry.get_real_size() - self._entryOffset)

    def available(self) -> int:
        """Returns the number of bytes left in the current entry, saturated to the maximum 32-bit signed integer."""
        self._check_closed()
        if self._entry is None or self._entry.is_directory():
            return 0
        return saturate_int32(self._entry.get_real_size() - self._entryOffset)

    def read(self, size: Optional[int] = -1) -> bytes:
        if size == 0:
            return b''

        remaining = self._remaining()
        toRead = remaining if size is None or size < 0 else min(size, remaining)
        if toRead <= 0:
            return b''

        if self._sparseFile is not None:
            data = self._sparseFile.read(toRead)
        else:
            data = self._read_raw(toRead)

        if len(data) < toRead:
            assert self._entry is not None
            raise TruncationError(
                f"Truncated TAR archive: expected {toRead} more B for '{self._entry.name}' "
                f"at offset {self._entryOffset} but got only {len(data)} B!"
            )

        self._entryOffset += len(data)
        return data

    def readinto(self, buffer) -> int:
        with memoryview(buffer) as view, view.cast("B") as byteView:  # type: ignore
            readBytes = self.read(len(byteView))
            byteView[: len(readBytes)] = readBytes
        return len(readBytes)

    def skip(self, size: int) -> int:
        """
        Skips up to 'size' bytes of the current entry and returns the number of skipped bytes,
        which is only smaller than requested when the end of the entry has been reached.
        """
        if size <= 0:
            return 0

        toSkip = min(size, self._remaining())
        if toSkip <= 0:
            return 0

        if self._sparseFile is not None:
            skipped = self._sparseFile.skip(toSkip)
        else:
            skipped = self._skip_raw(toSkip)

        if skipped != toSkip:
            assert self._entry is not None
            raise TruncationError(
                f"Truncated TAR archive: could only skip {skipped} of {toSkip} B in '{self._entry.name}' "
                f"at offset {self._entryOffset}!"
            )

        self._entryOffset += skipped
        return skipped

    def open_entry(self, buffering: int = -1) -> IO[bytes]:
        """
        Returns a file object for the data of the current entry. It becomes invalid when next_entry is called.
        buffering: Buffer size for io.BufferedReader. If 0, the raw unbuffered file object is returned.
        """
        self._check_closed()
        if self._entry is None:
            raise IllegalUseError("No current TAR entry to open. Call next_entry first!")

        rawFile = RawTarEntryFile(self, self._entry)
        if buffering == 0:
            return rawFile
        return io.BufferedReader(rawFile, buffer_size=io.DEFAULT_BUFFER_SIZE if buffering <= 0 else buffering)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._close_sparse_file()
        finally:
            self.framer.close()
            if self.rawFileObject is not None:
                self.rawFileObject.close()


class RawTarEntryFile(FixedRawIOBase):
    """A read-only sequential file view of one entry of a TarArchiveStream."""

    def __init__(self, stream: TarArchiveStream, entry: TarEntry) -> None:
        super().__init__()
        self.stream = stream
        self.entry = entry
        self.offset = 0

    def __enter__(self):
        return self

    def __exit__(self, exception_type, exception_value, exception_traceback):
        self.close()

    def _check_current(self) -> None:
        if self.closed:
            raise ValueError("A closed file can't be read from!")
        if self.stream.current_entry is not self.entry:
            raise IllegalUseError(f"The TAR entry '{self.entry.name}' is not the current entry anymore!")

    @overrides(io.RawIOBase)
    def seekable(self) -> bool:
        return False

    @overrides(io.RawIOBase)
    def readable(self) -> bool:
        return True

    @overrides(io.RawIOBase)
    def read(self, size: int = -1) -> bytes:
        self._check_current()
        result = self.stream.read(size)
        self.offset += len(result)
        return result

    @overrides(io.RawIOBase)
    def tell(self) -> int:
        return self.offset
