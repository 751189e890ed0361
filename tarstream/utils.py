import io
import os
import platform
from typing import get_type_hints


class TarStreamError(Exception):
    """Base exception for the tarstream module."""


class FormatError(TarStreamError):
    """Exception for malformed headers, corrupted sparse maps, or missing mandatory entries."""


class TruncationError(TarStreamError):
    """Exception for archives containing fewer bytes than announced by their headers."""


class IllegalUseError(TarStreamError):
    """Exception for calls that are not allowed in the current state, e.g., reading before the first entry."""


class CompressionError(TarStreamError):
    """Exception for trying to open files with unsupported compression or unavailable decompression module."""


def overrides(parentClass):
    """Simple decorator that checks that a method with the same name exists in the parent class"""

    def overrider(method):
        if platform.python_implementation() == 'PyPy':
            return method

        assert method.__name__ in dir(parentClass)
        parentMethod = getattr(parentClass, method.__name__)
        assert callable(parentMethod)

        if os.getenv('TARSTREAM_CHECK_OVERRIDES', '').lower() not in ('1', 'yes', 'on', 'enable', 'enabled'):
            return method

        parentTypes = get_type_hints(parentMethod)
        # If the parent is not typed, e.g., io.RawIOBase, then do not show errors for the typed derived class.
        for argument, argumentType in get_type_hints(method).items():
            if argument in parentTypes:
                parentType = parentTypes[argument]
                assert argumentType == parentType, f"{method.__name__}: {argument}: {argumentType} != {parentType}"

        return method

    return overrider


def ceil_div(dividend, divisor):
    return -(dividend // -divisor)


def round_up(value: int, multiple: int) -> int:
    """Rounds up to the next multiple, e.g., round_up(834, 512) == 1024."""
    return ceil_div(value, multiple) * multiple


def saturate_int32(value: int) -> int:
    return min(max(value, 0), 2**31 - 1)


class FixedRawIOBase(io.RawIOBase):
    @overrides(io.RawIOBase)
    def readall(self) -> bytes:
        # It is necessary to implement this, or else the io.RawIOBase.readall implementation would use
        # io.DEFAULT_BUFFER_SIZE (8 KiB) chunks and call readinto with them, which is much slower than
        # simply asking for everything at once from read(-1).
        # https://github.com/python/cpython/issues/85624
        chunks = []
        while result := self.read():
            chunks.append(result)
        return b"".join(chunks)

    @overrides(io.RawIOBase)
    def readinto(self, buffer):
        """Generic implementation which uses read."""
        with memoryview(buffer) as view, view.cast("B") as byteView:  # type: ignore
            readBytes = self.read(len(byteView))
            byteView[: len(readBytes)] = readBytes
        return len(readBytes)
