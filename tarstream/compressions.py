"""
Undoes an outer compression layer around a TAR archive. The TAR reader itself only needs a sequential
byte source, so any decompressor object with a read method will do. Detection relies on magic bytes
and a trial read and therefore needs a seekable compressed file.
"""

import dataclasses
import logging
import sys
from collections.abc import Sequence
from typing import IO, Callable, Optional

from .formats import COMPRESSION_FORMATS, FID, FileFormatID, might_be_format
from .utils import CompressionError

logger = logging.getLogger(__name__)

try:
    import indexed_gzip
except ImportError:
    indexed_gzip = None  # type: ignore

try:
    import indexed_zstd
except ImportError:
    indexed_zstd = None  # type: ignore

try:
    import rapidgzip
except ImportError:
    rapidgzip = None  # type: ignore

try:
    import xz
except ImportError:
    xz = None  # type: ignore


# Single-extension spellings of .tar.<compression>.
TAR_CONTRACTED_EXTENSIONS: dict[FileFormatID, list[str]] = {
    FID.BZIP2: ['tb2', 'tbz', 'tbz2', 'tz2'],
    FID.GZIP: ['taz', 'tgz'],
    FID.XZ: ['txz'],
    FID.ZSTANDARD: ['tzst'],
}


@dataclasses.dataclass
class CompressionBackendInfo:
    # fmt: off
    # Returns a decompressed file object for the compressed file object and the parallelization.
    open            : Callable[..., IO[bytes]]
    formats         : set[FileFormatID]
    # (module name, package name on PyPI) pairs, which all have to be importable.
    requiredModules : list[tuple[str, str]]
    # fmt: on

    def is_available(self) -> bool:
        return all(module in sys.modules for module, _ in self.requiredModules)

    def packages(self) -> list[str]:
        return [package for _, package in self.requiredModules]


def _open_xz(fileobj: IO[bytes], parallelization: int = 1) -> IO[bytes]:
    return xz.open(fileobj)  # type: ignore


def _open_zstandard(fileobj: IO[bytes], parallelization: int = 1) -> IO[bytes]:
    # indexed_zstd only works on real files.
    return indexed_zstd.IndexedZstdFile(fileobj.fileno())


COMPRESSION_BACKENDS: dict[str, CompressionBackendInfo] = {
    # rapidgzip also contains the parallel bzip2 decoder formerly known as indexed_bzip2.
    'rapidgzip-bzip2': CompressionBackendInfo(
        lambda fileobj, parallelization=1: rapidgzip.IndexedBzip2File(fileobj, parallelization=parallelization),
        {FID.BZIP2},
        [('rapidgzip', 'rapidgzip')],
    ),
    'rapidgzip': CompressionBackendInfo(
        lambda fileobj, parallelization=1: rapidgzip.RapidgzipFile(fileobj, parallelization=parallelization),
        {FID.GZIP},
        [('rapidgzip', 'rapidgzip')],
    ),
    'indexed_gzip': CompressionBackendInfo(
        lambda fileobj, parallelization=1: indexed_gzip.IndexedGzipFile(fileobj=fileobj, drop_handles=False),
        {FID.GZIP},
        [('indexed_gzip', 'indexed_gzip')],
    ),
    'xz': CompressionBackendInfo(_open_xz, {FID.XZ}, [('xz', 'python-xz')]),
    'indexed_zstd': CompressionBackendInfo(_open_zstandard, {FID.ZSTANDARD}, [('indexed_zstd', 'indexed_zstd')]),
}


def find_available_backend(
    compression: FileFormatID,
    enabledBackends: Optional[Sequence[str]] = None,
    prioritizedBackends: Optional[Sequence[str]] = None,
) -> Optional[CompressionBackendInfo]:
    """
    Returns the first installed backend for the compression. Prioritized backends are tried first in the
    given order, then all others in the order of COMPRESSION_BACKENDS. If 'enabledBackends' is given,
    no other backends are considered.
    """
    prioritized = list(prioritizedBackends or [])
    candidates = [
        name
        for name, info in COMPRESSION_BACKENDS.items()
        if compression in info.formats and (enabledBackends is None or name in enabledBackends)
    ]
    # sorted is stable, so unprioritized backends keep their order.
    ranked = sorted(
        candidates, key=lambda name: prioritized.index(name) if name in prioritized else len(prioritized)
    )
    return next((COMPRESSION_BACKENDS[name] for name in ranked if COMPRESSION_BACKENDS[name].is_available()), None)


def _is_seekable_file_object(fileobj) -> bool:
    # Duck-typing because not all file objects derive from io.IOBase.
    if any(not hasattr(fileobj, method) for method in ('seekable', 'seek', 'read', 'tell')):
        return False
    return bool(fileobj.seekable())


def _try_open(fileobj: IO[bytes], compression: FileFormatID, backend: CompressionBackendInfo) -> bool:
    """Checks that the backend accepts the file. The file offset is not restored."""
    try:
        decompressed = backend.open(fileobj, parallelization=1)
        try:
            # A single-frame zstd file might have to be decompressed fully to read only the first byte.
            if compression != FID.ZSTANDARD:
                decompressed.read(1)
        finally:
            decompressed.close()
    except Exception as exception:
        logger.info(
            "File with magic bytes for %s could not be opened: %s",
            compression.name,
            exception,
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return False
    return True


def detect_compression(
    fileobj: IO[bytes],
    enabledBackends: Optional[Sequence[str]] = None,
    prioritizedBackends: Optional[Sequence[str]] = None,
) -> Optional[FileFormatID]:
    """
    Returns the compression of the file object or None if it is not compressed or the compression could
    not be detected, e.g., because the file object is not seekable. If no backend is installed for the
    detected magic bytes, the compression is returned anyway so that the caller can report the error.
    """
    if not _is_seekable_file_object(fileobj):
        logger.info("Skipping compression detection for %s because it is not a seekable file object.", fileobj)
        return None

    oldOffset = fileobj.tell()
    try:
        for compression in COMPRESSION_FORMATS:
            if not might_be_format(fileobj, compression):
                continue

            backend = find_available_backend(compression, enabledBackends, prioritizedBackends)
            if backend is None:
                logger.warning(
                    "Found magic bytes for %s but no module to verify them is installed. To install tarstream "
                    "with all decompression backends do: python3 -m pip install --user tarstream[full]",
                    compression.name,
                )
                return compression

            if _try_open(fileobj, compression, backend):
                return compression
            fileobj.seek(oldOffset)
    finally:
        fileobj.seek(oldOffset)

    return None


def open_compressed_file(
    fileobj: IO[bytes],
    parallelization: int = 1,
    enabledBackends: Optional[Sequence[str]] = None,
    prioritizedBackends: Optional[Sequence[str]] = None,
) -> tuple[IO[bytes], Optional[FileFormatID]]:
    """
    Returns (decompressed file object, compression). The given file object is returned as is if no
    compression was detected.
    """
    compression = detect_compression(fileobj, enabledBackends, prioritizedBackends)
    if compression is None:
        return fileobj, None

    backend = find_available_backend(compression, enabledBackends, prioritizedBackends)
    if backend is None:
        packages = sorted(
            {
                package
                for info in COMPRESSION_BACKENDS.values()
                if compression in info.formats
                for package in info.packages()
            }
        )
        raise CompressionError(
            f"Cannot open the {compression.name} compressed TAR archive {getattr(fileobj, 'name', fileobj)} "
            f"without one of these packages: {', '.join(packages)}"
        )

    decompressed = backend.open(fileobj, parallelization=parallelization)
    logger.debug(
        "Decompressing %s with %s using parallelization %d.",
        compression.name,
        type(decompressed).__name__,
        parallelization,
    )
    return decompressed, compression
