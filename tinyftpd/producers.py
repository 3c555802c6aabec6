# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

from .exceptions import _FileReadWriteError

__all__ = ["FileProducer"]


class FileProducer:
    """Producer wrapper for file[-like] objects, read in chunks of
    buffer_size bytes so that the whole file is never held in memory.
    """

    buffer_size = 8192

    def __init__(self, file):
        self.file = file

    def more(self):
        """Attempt a chunk of data of size self.buffer_size."""
        try:
            return self.file.read(self.buffer_size)
        except OSError as err:
            raise _FileReadWriteError(err.errno, err.strerror) from err
