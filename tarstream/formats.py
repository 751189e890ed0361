"""
Cheap format checks for the start of a file, similar to libmagic, but only for the TAR container and
the compression formats commonly wrapped around it. Must not import the decompression modules.

See:
 - https://en.wikipedia.org/wiki/List_of_file_signatures
 - https://www.gnu.org/software/tar/manual/html_node/Standard.html
"""

import dataclasses
import enum
import struct
from typing import IO, Callable, Optional, Union

from .TarHeader import GNU_MAGIC, HEADER_SIZE, POSIX_MAGIC, verify_checksum


class FileFormatID(enum.Enum):
    # fmt: off
    TAR       = 0x201

    # Formats compressing a single stream, which in turn may contain a TAR.
    BZIP2     = 0x1001
    GZIP      = 0x1002
    XZ        = 0x1003
    ZSTANDARD = 0x1004
    # fmt: on


FID = FileFormatID

BZIP2_BLOCK_MAGIC = (0x314159265359).to_bytes(6, 'big')
ZSTANDARD_FRAME_MAGIC = 0xFD2FB528
# The lowest 4 bits of skippable frame magics can take any value.
ZSTANDARD_SKIPPABLE_FRAME_MAGIC = 0x184D2A50


def is_tar(fileobj: IO[bytes]) -> bool:
    """
    Checks the first header record. Old V7 archives have no magic bytes, therefore a matching
    header checksum also suffices.
    """
    header = fileobj.read(HEADER_SIZE)
    if len(header) < HEADER_SIZE:
        return False
    return header[257:263] in (GNU_MAGIC, POSIX_MAGIC) or verify_checksum(header)


def _is_bzip2(fileobj: IO[bytes]) -> bool:
    # "BZh" + block size digit + the magic of the first compressed block.
    header = fileobj.read(10)
    return header[:3] == b'BZh' and header[3:4] in b'123456789' and header[4:] == BZIP2_BLOCK_MAGIC


def _read_uint32(fileobj: IO[bytes]) -> Optional[int]:
    data = fileobj.read(4)
    return struct.unpack('<L', data)[0] if len(data) == 4 else None


def _is_zstandard(fileobj: IO[bytes]) -> bool:
    # https://github.com/facebook/zstd/blob/dev/doc/zstd_compression_format.md#skippable-frames
    magic = _read_uint32(fileobj)
    while magic is not None and magic & 0xFFFF_FFF0 == ZSTANDARD_SKIPPABLE_FRAME_MAGIC:
        frameSize = _read_uint32(fileobj)
        if frameSize is None:
            return False
        fileobj.seek(frameSize, 1)
        magic = _read_uint32(fileobj)
    return magic == ZSTANDARD_FRAME_MAGIC


@dataclasses.dataclass
class FileFormatInfo:
    # fmt: off
    # Extensions without the initial '.'
    extensions  : list[str]
    # Constant bytes at the start of the file, if any. They are checked before checkHeader.
    magicBytes  : Optional[bytes]
    # Further checks, which read from the start of the file. The offset is restored by the caller.
    # They should rather return false positives than reject files, which could still be opened.
    checkHeader : Optional[Callable[[IO[bytes]], bool]] = None
    # fmt: on


ARCHIVE_FORMATS: dict[FileFormatID, FileFormatInfo] = {
    FID.TAR: FileFormatInfo(['tar'], None, is_tar),
}

COMPRESSION_FORMATS: dict[FileFormatID, FileFormatInfo] = {
    FID.BZIP2: FileFormatInfo(['bz2', 'bzip2'], b'BZh', _is_bzip2),
    FID.GZIP: FileFormatInfo(['gz', 'gzip'], b'\x1f\x8b'),
    FID.XZ: FileFormatInfo(['xz'], b"\xfd7zXZ\x00"),
    FID.ZSTANDARD: FileFormatInfo(['zst', 'zstd', 'pzstd'], None, _is_zstandard),
}

FILE_FORMATS = {**ARCHIVE_FORMATS, **COMPRESSION_FORMATS}

assert set(FILE_FORMATS) == set(FileFormatID), "Each format ID must have a FileFormatInfo!"


def might_be_format(fileobj: IO[bytes], fid: Union[FileFormatID, FileFormatInfo]) -> bool:
    """Checks the magic bytes and header of the file at the current offset, which is restored afterwards."""
    formatInfo = fid if isinstance(fid, FileFormatInfo) else FILE_FORMATS[fid]
    if not formatInfo.magicBytes and not formatInfo.checkHeader:
        return False

    oldOffset = fileobj.tell()
    try:
        if formatInfo.magicBytes and fileobj.read(len(formatInfo.magicBytes)) != formatInfo.magicBytes:
            return False
        fileobj.seek(oldOffset)
        return formatInfo.checkHeader(fileobj) if formatInfo.checkHeader else True
    finally:
        fileobj.seek(oldOffset)
