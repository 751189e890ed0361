import dataclasses
import enum
import logging
from typing import Optional

from .PaxHeaders import SPARSE_MAP_KEY, parse_pax01_sparse_map, parse_pax_headers, read_pax1x_sparse_map
from .RecordFramer import RecordFramer
from .SparseFile import SparseSegment, build_sparse_segments
from .TarHeader import EntryType, TarEntry, parse_header, parse_sparse_continuation
from .utils import FormatError

logger = logging.getLogger(__name__)


class ResolverState(enum.Enum):
    START = enum.auto()
    LONG_LINK_PENDING = enum.auto()
    LONG_NAME_PENDING = enum.auto()
    GLOBAL_PAX_PENDING = enum.auto()
    LOCAL_PAX_PENDING = enum.auto()
    OLD_SPARSE_PENDING = enum.auto()
    RESOLVED = enum.auto()
    END_OF_ARCHIVE = enum.auto()


@dataclasses.dataclass
class ResolvedEntry:
    # fmt: off
    entry         : TarEntry
    # None if the data region is to be read directly.
    segments      : Optional[list[SparseSegment]]
    # Bytes at the start of the data region that were already consumed, e.g., the 1.0 sparse map.
    consumedBytes : int = 0
    # fmt: on


class ExtensionResolver:
    """
    Assembles one archive member from its header record and all the extension records belonging to it:

        START -> LONG_LINK_PENDING -> LONG_NAME_PENDING -> GLOBAL_PAX_PENDING -> LOCAL_PAX_PENDING
              -> OLD_SPARSE_PENDING -> RESOLVED

    All pending states are optional. Long name, long link, and PAX states consume the data of the
    extension entry and return to START to read the following header. The collected overrides are
    applied in the order: static header fields, global PAX headers, GNU long link and name, local
    PAX headers.
    """

    def __init__(self, framer: RecordFramer, encoding: str, lenient: bool = False) -> None:
        self.framer = framer
        self.encoding = encoding
        self.lenient = lenient

        self._handlers = {
            ResolverState.START: self._read_header,
            ResolverState.LONG_LINK_PENDING: self._read_long_link,
            ResolverState.LONG_NAME_PENDING: self._read_long_name,
            ResolverState.GLOBAL_PAX_PENDING: self._read_global_pax_headers,
            ResolverState.LOCAL_PAX_PENDING: self._read_local_pax_headers,
            ResolverState.OLD_SPARSE_PENDING: self._read_sparse_continuations,
        }

        self.globalPaxHeaders: dict[str, str] = {}
        self._reset()

    def _reset(self) -> None:
        self.entry: Optional[TarEntry] = None
        self.longName: Optional[str] = None
        self.longLink: Optional[str] = None
        self.localHeaders: dict[str, str] = {}
        # Keys removed by a local PAX record with an empty value. These also hide global defaults.
        self.deletedKeys: set[str] = set()
        self.paxSparseStructs: list[tuple[int, int]] = []
        # Offset of the last consumed extension header, for which a following entry is mandatory.
        self.extensionOffset: Optional[int] = None

    def resolve(self, globalPaxHeaders: dict[str, str]) -> Optional[ResolvedEntry]:
        """
        Reads records until a real archive member has been found and returns it together with its
        reconstruction plan. Returns None at the end of the archive. 'globalPaxHeaders' is updated
        in place when global extended headers are encountered.
        """
        self._reset()
        self.globalPaxHeaders = globalPaxHeaders

        state = ResolverState.START
        while state not in (ResolverState.RESOLVED, ResolverState.END_OF_ARCHIVE):
            state = self._handlers[state]()

        if state == ResolverState.END_OF_ARCHIVE:
            return None
        return self._finalize()

    def _read_header(self) -> ResolverState:
        record = self.framer.read_record()
        if record is None:
            if self.extensionOffset is not None:
                raise FormatError(
                    "Premature end of archive: found no entry after the extension header "
                    f"at offset {self.extensionOffset}!"
                )
            return ResolverState.END_OF_ARCHIVE

        globalHeaders = {
            key: value for key, value in self.globalPaxHeaders.items() if key not in self.deletedKeys
        }
        self.entry = parse_header(record, self.encoding, self.lenient, globalHeaders, self.framer.recordOffset)
        logger.debug(
            "Read header at offset %d: type %s, size %d, name '%s'",
            self.entry.offsetheader,
            self.entry.type.name,
            self.entry.size,
            self.entry.name,
        )

        entryType = self.entry.type
        if entryType == EntryType.GNU_LONG_LINK:
            return ResolverState.LONG_LINK_PENDING
        if entryType == EntryType.GNU_LONG_NAME:
            return ResolverState.LONG_NAME_PENDING
        if entryType == EntryType.PAX_GLOBAL_HEADER:
            return ResolverState.GLOBAL_PAX_PENDING
        if entryType == EntryType.PAX_LOCAL_HEADER:
            return ResolverState.LOCAL_PAX_PENDING
        if self.entry.is_old_gnu_sparse() and self.entry.isextended:
            return ResolverState.OLD_SPARSE_PENDING
        return ResolverState.RESOLVED

    def _read_extension_data(self) -> bytes:
        assert self.entry is not None
        size = self.entry.size
        self.extensionOffset = self.entry.offsetheader
        data = self.framer.read_exactly(size, f"{self.entry.type.name} data")
        self.framer.skip_padding(size)
        return data

    def _read_long_name_data(self) -> str:
        return self._read_extension_data().rstrip(b"\0").decode(self.encoding, 'surrogateescape')

    def _read_long_link(self) -> ResolverState:
        self.longLink = self._read_long_name_data()
        return ResolverState.START

    def _read_long_name(self) -> ResolverState:
        self.longName = self._read_long_name_data()
        return ResolverState.START

    def _read_global_pax_headers(self) -> ResolverState:
        assert self.entry is not None
        offset = self.entry.offsetheader
        headers, sparseStructs = parse_pax_headers(
            self._read_extension_data(), self.encoding, self.globalPaxHeaders, offset
        )

        # Sparse maps only make sense for a single file.
        ignoredKeys = [key for key in headers if key.startswith('GNU.sparse.')]
        if ignoredKeys or sparseStructs:
            logger.warning("Ignoring sparse keys %s in the global PAX header at offset %d.", ignoredKeys, offset)
        for key in ignoredKeys:
            del headers[key]

        self.globalPaxHeaders.clear()
        self.globalPaxHeaders.update(headers)
        return ResolverState.START

    def _read_local_pax_headers(self) -> ResolverState:
        assert self.entry is not None
        self.localHeaders, sparseStructs = parse_pax_headers(
            self._read_extension_data(), self.encoding, self.localHeaders, self.entry.offsetheader, self.deletedKeys
        )
        self.paxSparseStructs.extend(sparseStructs)
        return ResolverState.START

    def _read_sparse_continuations(self) -> ResolverState:
        assert self.entry is not None
        isExtended = self.entry.isextended
        while isExtended:
            offset = self.framer.bytesRead
            record = self.framer.read(self.framer.recordSize)
            if len(record) < self.framer.recordSize:
                raise FormatError(
                    "Premature end of archive: missing sparse continuation record at offset "
                    f"{offset} for the entry at offset {self.entry.offsetheader}!"
                )
            sparseStructs, isExtended = parse_sparse_continuation(record, offset)
            self.entry.sparsemap.extend(sparseStructs)
        return ResolverState.RESOLVED

    def _finalize(self) -> ResolvedEntry:
        entry = self.entry
        assert entry is not None

        if self.longLink is not None:
            entry.linkname = self.longLink
        if self.longName is not None:
            entry.name = self.longName
            entry.normalize_directory_name()
        if self.localHeaders:
            entry.apply_pax_headers(self.localHeaders)

        consumedBytes = 0
        if SPARSE_MAP_KEY in self.localHeaders:
            entry.sparsemap = parse_pax01_sparse_map(self.localHeaders[SPARSE_MAP_KEY], entry.offsetheader)
        elif self.paxSparseStructs:
            entry.sparsemap = self.paxSparseStructs
        elif entry.pax1xsparse:
            entry.sparsemap, consumedBytes = read_pax1x_sparse_map(
                self.framer.read, self.framer.recordSize, entry.offsetheader
            )
            if consumedBytes > entry.size:
                raise FormatError(
                    f"Corrupted TAR archive: the sparse map of '{entry.name}' is larger than the entry data!"
                )

        if not entry.is_sparse():
            return ResolvedEntry(entry, None, consumedBytes)

        # Without a map, e.g., for star sparse files, the stored data is followed by a hole up to the real size.
        sparseMap = entry.sparsemap or [(0, entry.size - consumedBytes)]
        segments = build_sparse_segments(sparseMap, entry.realsize, entry.name)
        storedSize = sum(segment.length for segment in segments if not segment.isHole)
        if storedSize > entry.size - consumedBytes:
            raise FormatError(
                f"Corrupted TAR archive: the sparse map of '{entry.name}' refers to {storedSize} B of data "
                f"but only {entry.size - consumedBytes} B are stored!"
            )

        return ResolvedEntry(entry, segments, consumedBytes)
