# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
tinyftpd: a small, sandboxed, active-mode FTP control-protocol server.

A hierarchy of classes outlined below implements the server:

    [tinyftpd.servers.FTPServer]
      accepts connections and dispatches them to a handler

    [tinyftpd.servers.ThreadedFTPServer]
      same as above but serves each connection from a fixed-size
      pool of worker threads

    [tinyftpd.handlers.FTPHandler]
      the per-connection session: it reads command lines, keeps the
      login state, the virtual working directory and the pending
      data address, and writes numeric replies

    [tinyftpd.data.ActiveDTP]
      connects to the address advertised by the client via PORT

    [tinyftpd.data.DTPHandler]
      moves the payload over the established data connection

    [tinyftpd.filesystems.PathSandbox]
      maps "virtual" client paths onto a real root directory which
      can never be escaped

    [tinyftpd.authorizers.DummyAuthorizer]
      an exact-match username / password store

Usage example:

>>> from tinyftpd.authorizers import DummyAuthorizer
>>> from tinyftpd.filesystems import PathSandbox
>>> from tinyftpd.handlers import FTPHandler
>>> from tinyftpd.servers import FTPServer
>>>
>>> authorizer = DummyAuthorizer()
>>> authorizer.add_user("alice", "123456")
>>>
>>> handler = FTPHandler
>>> handler.authorizer = authorizer
>>> handler.sandbox = PathSandbox("/srv/ftp")
>>>
>>> server = FTPServer(("127.0.0.1", 2121), handler)
>>> server.serve_forever()
"""

__ver__ = "0.1.0"
__author__ = "Giampaolo Rodola' <g.rodola@gmail.com>"
__web__ = "https://github.com/giampaolo/pyftpdlib/"
