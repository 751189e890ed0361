"""
Parsing of POSIX.1-2001 extended headers and of the GNU sparse maps that are transported by them.

A PAX record looks like "%d %s=%s\n" % (length, keyword, value), where length counts the complete record
including the length field itself and the newline. The GNU sparse map can be stored in three ways:

 - 0.0: repeated GNU.sparse.offset and GNU.sparse.numbytes records,
 - 0.1: a single GNU.sparse.map record with comma-separated offset,size pairs,
 - 1.0: newline-separated decimal numbers at the beginning of the data region, padded to the next record.

See https://www.gnu.org/software/tar/manual/html_section/Sparse-Formats.html
"""

import logging
import re
from typing import Callable, Optional

from .utils import FormatError, TruncationError

logger = logging.getLogger(__name__)

# Fields that are affected by hdrcharset.
PAX_NAME_FIELDS = {'path', 'linkpath', 'uname', 'gname'}
SPARSE_OFFSET_KEY = 'GNU.sparse.offset'
SPARSE_NUMBYTES_KEY = 'GNU.sparse.numbytes'
SPARSE_MAP_KEY = 'GNU.sparse.map'

# Note that the number of decimal digits for UINT64_MAX is ceil[64*ln(2)/ln(10)] = 20.
_DECIMAL_REGEX = re.compile(rb"[0-9]{1,20}")
_DECIMAL_STRING_REGEX = re.compile(r"[0-9]{1,20}")


def _decode_pax_field(value: bytes, encoding: str, fallbackEncoding: str) -> str:
    try:
        return value.decode(encoding, 'strict')
    except UnicodeDecodeError:
        return value.decode(fallbackEncoding, 'surrogateescape')


def _parse_sparse_number(keyword: str, value: str, headerOffset: int) -> int:
    if not _DECIMAL_STRING_REGEX.fullmatch(value):
        raise FormatError(f"Invalid {keyword} value {value!r} in the PAX header at offset {headerOffset}!")
    return int(value)


def parse_pax_headers(
    data: bytes,
    encoding: str,
    headers: Optional[dict[str, str]] = None,
    headerOffset: int = 0,
    deletedKeys: Optional[set[str]] = None,
) -> tuple[dict[str, str], list[tuple[int, int]]]:
    """
    Parses the data of a PAX extended header block. The records are merged into a copy of 'headers'.
    Records with an empty value remove the keyword and are recorded in 'deletedKeys' if given.
    Returns the merged headers and the sparse structures found in GNU.sparse.offset and
    GNU.sparse.numbytes records, which are not added to the returned headers.
    """
    headers = dict(headers) if headers else {}
    sparseStructs: list[tuple[int, int]] = []
    sparseOffset: Optional[int] = None

    # The hdrcharset record tells the encoding of the name fields, which must be known before decoding them.
    # BINARY means that they are stored as raw byte strings in the encoding of the archive.
    match = re.search(rb"\d+ hdrcharset=([^\n]+)\n", data)
    nameEncoding = encoding if match and match.group(1) == b'BINARY' else 'utf-8'

    position = 0
    while position < len(data) and data[position] != 0:
        spacePosition = data.find(b' ', position)
        lengthField = data[position:spacePosition] if spacePosition >= 0 else b''
        if not _DECIMAL_REGEX.fullmatch(lengthField):
            raise FormatError(
                f"Failed to read the PAX header at offset {headerOffset}: "
                f"invalid length field at byte {position} of the extended header data!"
            )

        length = int(lengthField)
        recordEnd = position + length
        if recordEnd <= spacePosition + 1 or recordEnd > len(data):
            raise FormatError(
                f"Failed to read the PAX header at offset {headerOffset}: "
                f"record length {length} at byte {position} does not fit into the extended header data!"
            )

        record = data[spacePosition + 1 : recordEnd]
        if not record.endswith(b'\n'):
            raise FormatError(
                f"Failed to read the PAX header at offset {headerOffset}: "
                f"record at byte {position} does not end with a newline!"
            )

        rawKeyword, separator, rawValue = record[:-1].partition(b'=')
        if not separator or not rawKeyword:
            raise FormatError(
                f"Failed to read the PAX header at offset {headerOffset}: "
                f"record at byte {position} is not of the form 'keyword=value'!"
            )

        keyword = _decode_pax_field(rawKeyword, 'utf-8', 'utf-8')
        if keyword in PAX_NAME_FIELDS:
            value = _decode_pax_field(rawValue, nameEncoding, encoding)
        else:
            value = _decode_pax_field(rawValue, 'utf-8', 'utf-8')

        if keyword == SPARSE_OFFSET_KEY:
            if sparseOffset is not None:
                sparseStructs.append((sparseOffset, 0))
            sparseOffset = _parse_sparse_number(keyword, value, headerOffset)
        elif keyword == SPARSE_NUMBYTES_KEY:
            if sparseOffset is None:
                raise FormatError(
                    f"Failed to read the PAX header at offset {headerOffset}: "
                    f"{SPARSE_OFFSET_KEY} is expected before {SPARSE_NUMBYTES_KEY}!"
                )
            sparseStructs.append((sparseOffset, _parse_sparse_number(keyword, value, headerOffset)))
            sparseOffset = None
        elif value:
            headers[keyword] = value
        else:
            headers.pop(keyword, None)
            if deletedKeys is not None:
                deletedKeys.add(keyword)

        position = recordEnd

    if sparseOffset is not None:
        sparseStructs.append((sparseOffset, 0))

    return headers, sparseStructs


def parse_pax01_sparse_map(value: str, headerOffset: int = 0) -> list[tuple[int, int]]:
    """Parses the value of GNU.sparse.map, e.g., '0,512,4096,512' -> [(0, 512), (4096, 512)]."""
    numbers = value.split(',')
    if len(numbers) % 2 != 0:
        raise FormatError(
            f"Corrupted TAR archive: odd number of values in {SPARSE_MAP_KEY} in the PAX header at {headerOffset}!"
        )

    values = [_parse_sparse_number(SPARSE_MAP_KEY, number, headerOffset) for number in numbers]
    return list(zip(values[::2], values[1::2]))


def read_pax1x_sparse_map(
    read: Callable[[int], bytes], recordSize: int, headerOffset: int = 0
) -> tuple[list[tuple[int, int]], int]:
    """
    Reads the sparse map stored at the beginning of the data region by the 1.0 format. It is read
    record-wise, which also consumes the padding after it. Returns the sparse map and the number of
    consumed bytes.
    """
    buffer = b''
    consumed = 0

    def read_number() -> int:
        nonlocal buffer, consumed
        while b'\n' not in buffer:
            if buffer.translate(None, b"0123456789"):
                raise FormatError(
                    f"Corrupted TAR archive: non-numeric value in the sparse map of the entry at offset {headerOffset}!"
                )
            chunk = read(recordSize)
            if len(chunk) < recordSize:
                raise TruncationError(
                    f"Truncated TAR archive while reading the sparse map of the entry at offset {headerOffset}!"
                )
            buffer += chunk
            consumed += len(chunk)

        line, buffer = buffer.split(b'\n', 1)
        if not _DECIMAL_REGEX.fullmatch(line):
            raise FormatError(
                f"Corrupted TAR archive: non-numeric value in the sparse map of the entry at offset {headerOffset}!"
            )
        return int(line)

    count = read_number()
    sparseMap = []
    for _ in range(count):
        offset = read_number()
        sparseMap.append((offset, read_number()))

    logger.debug("Read %d sparse map entries spanning %d B for the entry at offset %d.", count, consumed, headerOffset)
    return sparseMap, consumed
