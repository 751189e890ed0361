import logging
import os
from pathlib import Path
from typing import IO, Union

from .compressions import COMPRESSION_BACKENDS, TAR_CONTRACTED_EXTENSIONS, open_compressed_file
from .formats import COMPRESSION_FORMATS, FileFormatID
from .TarArchiveStream import TarArchiveStream
from .utils import TarStreamError

logger = logging.getLogger(__name__)


def _matches_extension(fileName: str, compression: FileFormatID) -> bool:
    extensions = COMPRESSION_FORMATS[compression].extensions + TAR_CONTRACTED_EXTENSIONS.get(compression, [])
    return any(fileName.lower().endswith('.' + extension.lower()) for extension in extensions)


def find_backends_by_extension(fileName: str) -> list[str]:
    return [
        backend
        for backend, info in COMPRESSION_BACKENDS.items()
        if any(_matches_extension(fileName, compression) for compression in info.formats)
    ]


def open_tar_stream(fileOrPath: Union[str, IO[bytes], os.PathLike], **options) -> TarArchiveStream:
    """
    Opens a TAR archive for sequential reading, undoing an outer compression layer if one is detected.

    Options consumed here: enabledBackends, prioritizedBackends, parallelization.
    All other options are forwarded to TarArchiveStream.
    """
    enabledBackends = options.pop('enabledBackends', None)
    prioritizedBackends = list(options.pop('prioritizedBackends', None) or [])
    parallelization = options.pop('parallelization', 1)

    ownsFile = False
    if isinstance(fileOrPath, (str, os.PathLike)):
        path = Path(fileOrPath)
        if not path.is_file():
            raise TarStreamError(f"TAR archive does not exist or is not a file: {fileOrPath!s}")
        prioritizedBackends += find_backends_by_extension(str(fileOrPath))
        fileobj: IO[bytes] = open(path, 'rb')
        ownsFile = True
    else:
        fileobj = fileOrPath

    try:
        decompressedFile, compression = open_compressed_file(
            fileobj,
            parallelization=parallelization,
            enabledBackends=enabledBackends,
            prioritizedBackends=prioritizedBackends,
        )
    except Exception:
        if ownsFile:
            fileobj.close()
        raise

    try:
        stream = TarArchiveStream(decompressedFile, **options)
    except Exception:
        if decompressedFile is not fileobj:
            decompressedFile.close()
        if ownsFile:
            fileobj.close()
        raise

    if compression is not None:
        logger.info("Reading %s compressed TAR archive %s.", compression.name, getattr(fileobj, 'name', fileobj))
        if ownsFile:
            stream.rawFileObject = fileobj
    return stream
