# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

__all__ = ["AuthorizerError", "FilesystemError", "PathEscapeError"]


class AuthorizerError(Exception):
    """Base class for authorizer exceptions."""


class FilesystemError(Exception):
    """Custom class for filesystem-related exceptions.
    Its message is considered safe to be sent to the client.
    """


class PathEscapeError(FilesystemError):
    """Raised when a path resolves outside of the served root
    directory.
    """


class _FileReadWriteError(OSError):
    """Exception raised when reading or writing a file during a transfer."""
