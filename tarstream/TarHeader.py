import dataclasses
import enum
import logging
import re
import struct
from typing import Optional

from .utils import FormatError

logger = logging.getLogger(__name__)

HEADER_SIZE = 512
# Sentinel substituted for malformed numeric fields in lenient mode.
UNKNOWN = -1

GNU_MAGIC = b"ustar "
GNU_VERSION = b" \0"
POSIX_MAGIC = b"ustar\0"
XSTAR_MAGIC = b"tar\0"

# Number of sparse structures in the GNU header and in each continuation record.
SPARSE_HEADERS_IN_HEADER = 4
SPARSE_HEADERS_IN_CONTINUATION = 21
SPARSE_STRUCT_SIZE = 24


class EntryType(enum.Enum):
    REGULAR = enum.auto()
    DIRECTORY = enum.auto()
    SYMLINK = enum.auto()
    HARDLINK = enum.auto()
    CHARACTER_DEVICE = enum.auto()
    BLOCK_DEVICE = enum.auto()
    FIFO = enum.auto()
    CONTIGUOUS = enum.auto()
    GNU_LONG_NAME = enum.auto()
    GNU_LONG_LINK = enum.auto()
    GNU_SPARSE = enum.auto()
    PAX_LOCAL_HEADER = enum.auto()
    PAX_GLOBAL_HEADER = enum.auto()
    OTHER = enum.auto()


TYPE_FLAGS: dict[bytes, EntryType] = {
    # fmt: off
    b"0"  : EntryType.REGULAR,
    b"\0" : EntryType.REGULAR,
    b"1"  : EntryType.HARDLINK,
    b"2"  : EntryType.SYMLINK,
    b"3"  : EntryType.CHARACTER_DEVICE,
    b"4"  : EntryType.BLOCK_DEVICE,
    b"5"  : EntryType.DIRECTORY,
    b"6"  : EntryType.FIFO,
    b"7"  : EntryType.CONTIGUOUS,
    b"L"  : EntryType.GNU_LONG_NAME,
    b"K"  : EntryType.GNU_LONG_LINK,
    b"S"  : EntryType.GNU_SPARSE,
    b"x"  : EntryType.PAX_LOCAL_HEADER,
    b"X"  : EntryType.PAX_LOCAL_HEADER,  # Solaris
    b"g"  : EntryType.PAX_GLOBAL_HEADER,
    # fmt: on
}

# Entries that only carry metadata for the entry following them.
EXTENSION_TYPES = {
    EntryType.GNU_LONG_NAME,
    EntryType.GNU_LONG_LINK,
    EntryType.PAX_LOCAL_HEADER,
    EntryType.PAX_GLOBAL_HEADER,
}


class HeaderFormat(enum.Enum):
    V7 = enum.auto()
    USTAR = enum.auto()
    GNU = enum.auto()
    STAR = enum.auto()


@dataclasses.dataclass
class TarEntry:
    """
    Metadata for one archive member after all extension headers have been applied.
    The stream hands it out after resolution and does not modify it afterwards.
    """

    # fmt: off
    name         : str
    linkname     : str
    type         : EntryType
    typeflag     : bytes
    format       : HeaderFormat
    mode         : int
    uid          : int
    gid          : int
    uname        : str
    gname        : str
    # Number of data bytes stored in the archive. For sparse files, this differs from the real file size.
    size         : int
    mtime        : float
    devmajor     : int
    devminor     : int
    checksumok   : bool
    offsetheader : int                             = 0
    atime        : Optional[float]                 = None
    ctime        : Optional[float]                 = None
    realsize     : int                             = 0
    isextended   : bool                            = False
    paxsparse    : bool                            = False
    pax1xsparse  : bool                            = False
    starsparse   : bool                            = False
    sparsemap    : list[tuple[int, int]]           = dataclasses.field(default_factory=list)
    paxheaders   : dict[str, str]                  = dataclasses.field(default_factory=dict)
    # fmt: on

    def is_old_gnu_sparse(self) -> bool:
        return self.type == EntryType.GNU_SPARSE

    def is_sparse(self) -> bool:
        return self.is_old_gnu_sparse() or self.paxsparse or self.starsparse

    def get_real_size(self) -> int:
        """Returns the size of the reconstructed file contents."""
        return self.realsize if self.is_sparse() else self.size

    def is_extension(self) -> bool:
        return self.type in EXTENSION_TYPES

    def is_directory(self) -> bool:
        if self.type == EntryType.DIRECTORY:
            return True
        return self.type not in (EntryType.PAX_LOCAL_HEADER, EntryType.PAX_GLOBAL_HEADER) and self.name.endswith('/')

    def is_file(self) -> bool:
        return self.type in (EntryType.REGULAR, EntryType.CONTIGUOUS, EntryType.GNU_SPARSE) and not self.is_directory()

    def is_symlink(self) -> bool:
        return self.type == EntryType.SYMLINK

    def is_hardlink(self) -> bool:
        return self.type == EntryType.HARDLINK

    def normalize_directory_name(self) -> None:
        if self.is_directory() and self.name and not self.name.endswith('/'):
            self.name += '/'

    def apply_pax_headers(self, headers: dict[str, str]) -> None:
        """
        Replace fields with supplemental information from PAX extended headers. Sparse maps are not
        handled here because, depending on the sparse format version, they are spread over multiple
        keys or stored inside the data region.
        """
        for keyword, value in headers.items():
            if keyword == 'path':
                self.name = value
            elif keyword == 'linkpath':
                self.linkname = value
            elif keyword == 'uid':
                self.uid = _parse_pax_integer(keyword, value)
            elif keyword == 'gid':
                self.gid = _parse_pax_integer(keyword, value)
            elif keyword == 'uname':
                self.uname = value
            elif keyword == 'gname':
                self.gname = value
            elif keyword == 'size':
                self.size = _parse_pax_integer(keyword, value)
            elif keyword == 'mtime':
                self.mtime = _parse_pax_time(keyword, value)
            elif keyword == 'atime':
                self.atime = _parse_pax_time(keyword, value)
            elif keyword == 'ctime':
                self.ctime = _parse_pax_time(keyword, value)
            elif keyword == 'SCHILY.devmajor':
                self.devmajor = _parse_pax_integer(keyword, value)
            elif keyword == 'SCHILY.devminor':
                self.devminor = _parse_pax_integer(keyword, value)
            elif keyword == 'GNU.sparse.size':
                # Sparse format 0.0 and 0.1
                self.paxsparse = True
                self.realsize = _parse_pax_integer(keyword, value)
            elif keyword == 'GNU.sparse.realsize':
                # Sparse format 1.0
                self.paxsparse = True
                self.pax1xsparse = True
                self.realsize = _parse_pax_integer(keyword, value)
            elif keyword == 'GNU.sparse.major':
                if value == '1':
                    self.paxsparse = True
                    self.pax1xsparse = True
            elif keyword == 'GNU.sparse.map':
                self.paxsparse = True
            elif keyword == 'SCHILY.filetype':
                self.starsparse = value == 'sparse'
            elif keyword == 'SCHILY.realsize':
                self.realsize = _parse_pax_integer(keyword, value)

        # The path field of sparse files contains a generated name, e.g., ./GNUSparseFile.123/name.
        if 'GNU.sparse.name' in headers:
            self.name = headers['GNU.sparse.name']

        self.paxheaders.update(headers)
        self.normalize_directory_name()


_PAX_INTEGER_REGEX = re.compile(r"[0-9]+")
_PAX_TIME_REGEX = re.compile(r"-?[0-9]+(\.[0-9]*)?")


def _parse_pax_integer(keyword: str, value: str) -> int:
    if not _PAX_INTEGER_REGEX.fullmatch(value):
        raise FormatError(f"Error detected parsing the PAX header: {keyword}={value!r} is not a non-negative integer!")
    return int(value)


def _parse_pax_time(keyword: str, value: str) -> float:
    if not _PAX_TIME_REGEX.fullmatch(value):
        raise FormatError(f"Error detected parsing the PAX header: {keyword}={value!r} is not a time stamp!")
    return float(value)


def nts(field: bytes, encoding: str) -> str:
    """Convert a null-terminated bytes object to a string."""
    position = field.find(b"\0")
    if position != -1:
        field = field[:position]
    return field.decode(encoding, 'surrogateescape')


def parse_octal(field: bytes) -> int:
    """
    Parses a right-justified octal number, which may be padded with leading spaces and
    terminated by NUL or space characters. A leading NUL is interpreted as zero.
    """
    if len(field) < 2:
        raise ValueError("Octal fields must be at least 2 B long!")
    if field[0] == 0:
        return 0

    digits = field.lstrip(b" ").rstrip(b" \0")
    if not all(0x30 <= c <= 0x37 for c in digits):
        raise ValueError(f"Invalid byte in octal field: {field!r}")
    return int(digits, 8) if digits else 0


def parse_octal_or_binary(field: bytes) -> int:
    """
    Numbers too large for the octal representation are stored as base-256 big-endian integers marked by
    a set high bit in the first byte. A first byte of 0xFF denotes a negative two's complement number.
    """
    if field[0] & 0x80 == 0:
        return parse_octal(field)

    value = int.from_bytes(field[1:], 'big')
    if field[0] == 0xFF:
        value -= 256 ** (len(field) - 1)
    return value


def compute_checksums(header: bytes) -> tuple[int, int]:
    """
    Calculate the checksum for a member's header by summing up all characters except for the checksum
    field, which is treated as if it was filled with spaces. Some old writers used signed chars, therefore
    an unsigned and a signed checksum are returned.
    """
    unsignedChecksum = 256 + sum(struct.unpack_from("148B8x356B", header))
    signedChecksum = 256 + sum(struct.unpack_from("148b8x356b", header))
    return unsignedChecksum, signedChecksum


def verify_checksum(header: bytes) -> bool:
    try:
        storedChecksum = parse_octal(header[148:156])
    except ValueError:
        return False
    return storedChecksum in compute_checksums(header)


def _parse_numeric(header: bytes, offset: int, length: int, fieldName: str, lenient: bool, headerOffset: int) -> int:
    try:
        return parse_octal_or_binary(header[offset : offset + length])
    except ValueError as exception:
        if lenient:
            logger.debug("Substituting unknown value for malformed %s field at offset %d.", fieldName, headerOffset)
            return UNKNOWN
        raise FormatError(
            f"Error detected parsing the {fieldName} field of the header at offset {headerOffset}: {exception}"
        ) from exception


def _parse_sparse_structs(record: bytes, offset: int, count: int, headerOffset: int) -> list[tuple[int, int]]:
    structs = []
    for i in range(count):
        position = offset + i * SPARSE_STRUCT_SIZE
        try:
            sparseOffset = parse_octal_or_binary(record[position : position + 12])
            numbytes = parse_octal_or_binary(record[position + 12 : position + 24])
        except ValueError as exception:
            raise FormatError(f"Malformed sparse structure in the record at offset {headerOffset}!") from exception
        if sparseOffset < 0 or numbytes < 0:
            raise FormatError(f"Corrupted TAR archive: negative sparse structure in the record at {headerOffset}!")
        structs.append((sparseOffset, numbytes))
    return structs


def detect_header_format(header: bytes) -> HeaderFormat:
    magic = header[257:263]
    if magic == GNU_MAGIC:
        return HeaderFormat.GNU
    if magic == POSIX_MAGIC:
        return HeaderFormat.STAR if header[508:512] == XSTAR_MAGIC else HeaderFormat.USTAR
    return HeaderFormat.V7


def parse_header(
    record: bytes,
    encoding: str,
    lenient: bool = False,
    globalPaxHeaders: Optional[dict[str, str]] = None,
    headerOffset: int = 0,
) -> TarEntry:
    """
    Parses one header record. The global PAX headers, if given, are applied as defaults to entries
    that are not themselves extension headers.
    """
    if len(record) < HEADER_SIZE:
        raise FormatError(f"Header record at offset {headerOffset} is shorter than {HEADER_SIZE} B!")
    header = record[:HEADER_SIZE]

    def parse_field(offset: int, length: int, fieldName: str) -> int:
        return _parse_numeric(header, offset, length, fieldName, lenient, headerOffset)

    checksumOk = verify_checksum(header)
    if not checksumOk:
        logger.warning("Header checksum mismatch for the record at offset %d.", headerOffset)

    try:
        size = parse_octal_or_binary(header[124:136])
    except ValueError as exception:
        raise FormatError(
            f"Error detected parsing the size field of the header at offset {headerOffset}!"
        ) from exception
    if size < 0:
        raise FormatError(f"Broken archive: entry with negative size in the header at offset {headerOffset}!")

    typeflag = header[156:157]
    headerFormat = detect_header_format(header)
    entry = TarEntry(
        # fmt: off
        name         = nts(header[0:100], encoding),
        linkname     = nts(header[157:257], encoding),
        type         = TYPE_FLAGS.get(typeflag, EntryType.OTHER),
        typeflag     = typeflag,
        format       = headerFormat,
        mode         = parse_field(100, 8, "mode"),
        uid          = parse_field(108, 8, "uid"),
        gid          = parse_field(116, 8, "gid"),
        uname        = nts(header[265:297], encoding),
        gname        = nts(header[297:329], encoding),
        size         = size,
        mtime        = parse_field(136, 12, "mtime"),
        devmajor     = parse_field(329, 8, "devmajor"),
        devminor     = parse_field(337, 8, "devminor"),
        checksumok   = checksumOk,
        offsetheader = headerOffset,
        # fmt: on
    )

    if headerFormat == HeaderFormat.GNU:
        entry.atime = parse_field(345, 12, "atime")
        entry.ctime = parse_field(357, 12, "ctime")
        if entry.is_old_gnu_sparse():
            entry.sparsemap = _parse_sparse_structs(header, 386, SPARSE_HEADERS_IN_HEADER, headerOffset)
            entry.isextended = header[482] != 0
            entry.realsize = parse_field(483, 12, "realsize")
    elif headerFormat == HeaderFormat.STAR:
        prefix = nts(header[345:476], encoding)
        if prefix and not entry.is_extension():
            entry.name = prefix + '/' + entry.name
        entry.atime = parse_field(476, 12, "atime")
        entry.ctime = parse_field(488, 12, "ctime")
    else:
        # V7 archives have no prefix field but it is filled with zeros in practice.
        prefix = nts(header[345:500], encoding)
        if prefix and not entry.is_extension():
            entry.name = prefix + '/' + entry.name

    if not entry.is_extension():
        entry.normalize_directory_name()
        if globalPaxHeaders:
            entry.apply_pax_headers(globalPaxHeaders)

    return entry


def parse_sparse_continuation(record: bytes, headerOffset: int = 0) -> tuple[list[tuple[int, int]], bool]:
    """Parses an old GNU sparse continuation record and returns the sparse structures and the 'extended' flag."""
    structs = _parse_sparse_structs(record, 0, SPARSE_HEADERS_IN_CONTINUATION, headerOffset)
    isExtended = record[SPARSE_HEADERS_IN_CONTINUATION * SPARSE_STRUCT_SIZE] != 0
    return structs, isExtended
