# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import os
import posixpath

from .exceptions import FilesystemError
from .exceptions import PathEscapeError

__all__ = ["FilesystemError", "PathEscapeError", "PathSandbox"]


class PathSandbox:
    """A class used to map "virtual" ftp paths onto a "real" root
    directory, emulating a UNIX chroot jail where the user can not
    escape the served directory (example: real "/srv/ftp" path will
    be seen as "/" by the client).

    A single instance is shared by all sessions of a server: it holds
    no per-session state, the virtual working directory is passed in
    by the caller on every call.

    Any path which would land outside of the root, either lexically
    (".." segments) or through a symbolic link, raises
    PathEscapeError; it is never silently clamped to the root.
    """

    def __init__(self, root):
        """
        - (str) root: the "real" directory being served
          (e.g. '/srv/ftp').
        """
        real = os.path.realpath(os.path.abspath(root))
        if not os.path.exists(real):
            raise ValueError(f"root directory does not exist: {real!r}")
        if not os.path.isdir(real):
            raise ValueError(f"root path is not a directory: {real!r}")
        self._root = real

    def __repr__(self):
        return f"<{self.__class__.__name__}(root={self._root!r})>"

    @property
    def root(self):
        """The canonical real root directory."""
        return self._root

    # --- Pathname / conversion utilities

    @staticmethod
    def ftpnorm(cwd, ftppath):
        """Normalize a "virtual" ftp pathname (typically the raw string
        coming from client) depending on the current working directory.

        Example (having "/foo" as current working directory):
        >>> ftpnorm('/foo', 'bar')
        '/foo/bar'

        The filesystem is never touched. Note that the result may
        still point above "/" (e.g. "/.."); containment is checked by
        resolve().
        """
        if ftppath.startswith("/"):
            p = "/" + ftppath.lstrip("/")
        else:
            p = posixpath.join(cwd or "/", ftppath)
        p = posixpath.normpath(p)
        # posixpath.normpath() keeps exactly two leading slashes
        if p.startswith("//"):
            p = "/" + p.lstrip("/")
        return p

    def _base(self, cwd):
        if not cwd or cwd == "/":
            return self._root
        return os.path.join(self._root, *cwd.lstrip("/").split("/"))

    def within_root(self, path):
        """Return True if the real, already normalized path is the
        root or is nested under it.
        """
        root = self._root
        if path == root:
            return True
        if not root.endswith(os.sep):
            root += os.sep
        return path.startswith(root)

    def resolve(self, cwd, ftppath):
        """Translate a "virtual" ftp pathname, relative to the virtual
        working directory 'cwd' unless it starts with "/", into the
        equivalent absolute "real" filesystem pathname.

        Example (having "/srv/ftp" as root and "/pub" as cwd):
        >>> resolve('/pub', 'docs')
        '/srv/ftp/pub/docs'
        >>> resolve('/pub', '/etc')
        '/srv/ftp/etc'
        >>> resolve('/pub', '../..')
        Traceback (most recent call last):
        ...
        PathEscapeError: ...

        Raises PathEscapeError if the result is outside of the root.
        """
        ftppath = ftppath.strip()
        if ftppath.startswith("/"):
            base = self._root
            ftppath = ftppath.lstrip("/")
        else:
            base = self._base(cwd)
        if ftppath in ("", "."):
            target = base
        else:
            target = os.path.join(base, *ftppath.split("/"))
        # lexical only, ".." segments are collapsed here
        target = os.path.normpath(target)
        if not self.within_root(target):
            raise PathEscapeError("Access denied: path outside root directory")
        # a symlink living inside the root may still point outside of it
        if os.path.lexists(target):
            if not self.within_root(os.path.realpath(target)):
                raise PathEscapeError(
                    "Access denied: link points outside root directory"
                )
        return target

    def fs2ftp(self, fspath):
        """Translate a "real" filesystem pathname into equivalent
        absolute "virtual" ftp pathname.

        Example (having "/srv/ftp" as root directory):
        >>> fs2ftp("/srv/ftp/foo")
        '/foo'

        Directory separators of the result are always "/". A path
        escaping the root raises PathEscapeError.
        """
        p = os.path.normpath(fspath)
        if not self.within_root(p):
            raise PathEscapeError("Access denied: path outside root directory")
        rel = os.path.relpath(p, self._root)
        if rel == os.curdir:
            return "/"
        return "/" + rel.replace(os.sep, "/")

    # --- Wrapper methods around os.* calls

    def isdir(self, path):
        """Return True if path is a directory."""
        return os.path.isdir(path)

    def listdir(self, path):
        """List the content of a directory."""
        return os.listdir(path)

    def getsize(self, path):
        """Return the size of the specified file in bytes."""
        return os.path.getsize(path)

    # --- Listing utilities

    def format_list(self, basedir, listing=None):
        """Return an iterator object that yields the entries of given
        directory, one line per entry, emulating a compact "ls"
        output.

         - (str) basedir: the absolute dirname.
         - (list) listing: the names of the entries in basedir; if
           omitted the directory is listed here.

        Directories are suffixed with "/", anything else with its size
        in bytes. An empty directory yields a single placeholder line:

        pub/
        readme.txt (1024 bytes)
        """
        if listing is None:
            listing = self.listdir(basedir)
        count = 0
        for basename in sorted(listing):
            file = os.path.join(basedir, basename)
            try:
                if self.isdir(file):
                    line = f"{basename}/\r\n"
                else:
                    line = f"{basename} ({self.getsize(file)} bytes)\r\n"
            except (OSError, FilesystemError):
                # file vanished in the meantime
                continue
            count += 1
            yield line
        if not count:
            yield "(empty directory)\r\n"
