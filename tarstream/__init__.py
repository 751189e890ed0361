"""TAR Stream

Sequential reader for TAR archives. It works on any byte source that can be read from front to back,
e.g., pipes, sockets, or decompressors, and understands the ustar, GNU, PAX, and star dialects
including long names, global and local extended headers, and sparse files in all GNU formats.

The most common usecase should be covered by the open_tar_stream factory function.

Example:

    from tarstream import open_tar_stream

    with open_tar_stream("foo.tar.gz") as archive:
        for entry in archive:
            print(entry.name, entry.get_real_size())
            if entry.is_file():
                with archive.open_entry() as file:
                    print(file.read())
"""

from .version import __version__

from .utils import CompressionError, FormatError, IllegalUseError, TarStreamError, TruncationError
from .TarHeader import UNKNOWN, EntryType, HeaderFormat, TarEntry
from .TarArchiveStream import RawTarEntryFile, TarArchiveStream
from .compressions import detect_compression
from .formats import FileFormatID, is_tar, might_be_format
from .factory import open_tar_stream
