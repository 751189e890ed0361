"""Builds TAR archives record by record for dialects and defects the tarfile module cannot produce."""

import io
from typing import Optional

RECORD_SIZE = 512
BLOCK_SIZE = 20 * RECORD_SIZE
EOF_MARKER = bytes(2 * RECORD_SIZE)

POSIX_MAGIC = b"ustar\x0000"
GNU_MAGIC = b"ustar  \x00"


def octal(value: int, length: int) -> bytes:
    return b"%0*o\x00" % (length - 1, value)


def base256(value: int, length: int) -> bytes:
    if value >= 0:
        return b"\x80" + value.to_bytes(length - 1, 'big')
    return b"\xff" + (256 ** (length - 1) + value).to_bytes(length - 1, 'big')


def pad(data: bytes, multiple: int = RECORD_SIZE) -> bytes:
    return data + bytes(-len(data) % multiple)


def make_header(
    name: bytes = b"file.txt",
    size=0,
    typeflag: bytes = b"0",
    magic: bytes = POSIX_MAGIC,
    linkname: bytes = b"",
    mode=0o644,
    uid=1000,
    gid=1000,
    mtime=1600000000,
    uname: bytes = b"user",
    gname: bytes = b"group",
    fields: Optional[dict[int, bytes]] = None,
    checksum: Optional[bytes] = None,
) -> bytes:
    """
    Numeric arguments may also be given as raw bytes to store malformed values.
    'fields' maps header offsets to raw bytes that are written last, e.g., for prefixes or sparse structures.
    """
    header = bytearray(RECORD_SIZE)

    def put(offset: int, value: bytes) -> None:
        header[offset : offset + len(value)] = value

    def number(value, length: int) -> bytes:
        return value if isinstance(value, bytes) else octal(value, length)

    put(0, name)
    put(100, number(mode, 8))
    put(108, number(uid, 8))
    put(116, number(gid, 8))
    put(124, number(size, 12))
    put(136, number(mtime, 12))
    put(156, typeflag)
    put(157, linkname)
    put(257, magic)
    put(265, uname)
    put(297, gname)
    for offset, value in (fields or {}).items():
        put(offset, value)

    if checksum is None:
        header[148:156] = b" " * 8
        checksum = b"%06o\x00 " % sum(header)
    put(148, checksum)
    return bytes(header)


def make_entry(data: bytes = b"", **headerArguments) -> bytes:
    headerArguments.setdefault('size', len(data))
    return make_header(**headerArguments) + pad(data)


def pax_record(keyword: str, value) -> bytes:
    if isinstance(value, str):
        value = value.encode()
    payload = b" " + keyword.encode() + b"=" + value + b"\n"
    length = len(payload) + 1
    while len(str(length)) + len(payload) != length:
        length = len(str(length)) + len(payload)
    return str(length).encode() + payload


def make_pax_entry(records, typeflag: bytes = b"x") -> bytes:
    if isinstance(records, dict):
        records = records.items()
    data = b"".join(pax_record(keyword, value) for keyword, value in records)
    return make_entry(data, name=b"././@PaxHeader", typeflag=typeflag)


def make_long_name_entry(name: bytes, typeflag: bytes = b"L") -> bytes:
    return make_entry(name + b"\x00", name=b"././@LongLink", typeflag=typeflag, magic=GNU_MAGIC)


def sparse_structs(sparseMap) -> bytes:
    return b"".join(octal(offset, 12) + octal(size, 12) for offset, size in sparseMap)


def make_old_gnu_sparse_entry(name: bytes, sparseMap, realSize: int, data: bytes) -> bytes:
    """Stores the first four sparse structures in the header and the rest in continuation records."""
    sparseMap = list(sparseMap)
    inHeader, rest = sparseMap[:4], sparseMap[4:]
    fields = {386: sparse_structs(inHeader), 483: octal(realSize, 12)}
    if rest:
        fields[482] = b"\x01"

    result = make_header(name=name, size=len(data), typeflag=b"S", magic=GNU_MAGIC, fields=fields)
    while rest:
        chunk, rest = rest[:21], rest[21:]
        continuation = bytearray(RECORD_SIZE)
        continuation[: 24 * len(chunk)] = sparse_structs(chunk)
        continuation[504] = 1 if rest else 0
        result += bytes(continuation)
    return result + pad(data)


def make_pax1_sparse_map(sparseMap) -> bytes:
    numbers = [len(sparseMap)] + [number for pair in sparseMap for number in pair]
    return pad(b"".join(b"%d\n" % number for number in numbers))


def make_archive(*entries: bytes, eofRecords: int = 2, blockPadding: bool = True) -> bytes:
    archive = b"".join(entries) + bytes(eofRecords * RECORD_SIZE)
    return pad(archive, BLOCK_SIZE) if blockPadding else archive


class NonSeekableStream(io.RawIOBase):
    """Simulates a pipe, which can neither seek nor peek, and returns at most 'chunkSize' bytes per call."""

    def __init__(self, data: bytes, chunkSize: int = 1000) -> None:
        super().__init__()
        self.data = data
        self.offset = 0
        self.chunkSize = chunkSize

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        size = min(len(buffer), self.chunkSize, len(self.data) - self.offset)
        buffer[:size] = self.data[self.offset : self.offset + size]
        self.offset += size
        return size
