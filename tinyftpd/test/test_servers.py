# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import contextlib
import ftplib
import socket
from unittest.mock import patch

import pytest

from tinyftpd import handlers
from tinyftpd import servers
from tinyftpd.filesystems import PathSandbox
from tinyftpd.ioloop import IOLoop

from . import GLOBAL_TIMEOUT
from . import HOST
from . import PASSWD
from . import USER
from . import WINDOWS
from . import FtpdThreadWrapper
from . import TinyftpdTestCase
from . import call_until
from . import close_client
from . import connect_client
from .test_functional import TestAuthentication
from .test_functional import TestCommandParsing
from .test_functional import TestEndToEnd
from .test_functional import TestList
from .test_functional import TestNavigation
from .test_functional import TestPort
from .test_functional import TestQuit


class _TFTPd(FtpdThreadWrapper):
    server_class = servers.ThreadedFTPServer


class TestFTPServer(TinyftpdTestCase):
    """Tests for *FTPServer classes."""

    server_class = FtpdThreadWrapper
    client_class = ftplib.FTP

    def setUp(self):
        super().setUp()
        self.root = self.make_root()
        self.server = None
        self.client = None

    def tearDown(self):
        if self.client is not None:
            close_client(self.client)
        if self.server is not None:
            self.server.stop()
        super().tearDown()

    @pytest.mark.skipif(WINDOWS, reason="POSIX only")
    def test_sock_instead_of_addr(self):
        # pass a socket object instead of an address tuple to FTPServer
        # constructor
        with contextlib.closing(socket.socket()) as sock:
            sock.bind((HOST, 0))
            sock.listen(5)
            ip, port = sock.getsockname()[:2]
            self.server = self.server_class(self.root, addr=sock)
            self.server.start()
            self.client = self.client_class(timeout=GLOBAL_TIMEOUT)
            self.client.connect(ip, port)
            self.client.login(USER, PASSWD)
            self.client.quit()
            self.server.stop()
            self.server = None

    def test_ctx_mgr(self):
        handlers.FTPHandler.sandbox = PathSandbox(self.root)
        with servers.FTPServer((HOST, 0), handlers.FTPHandler) as server:
            assert server is not None
            assert server.address[0] == HOST
            assert server.address[1] != 0
        assert server.ioloop.socket_map == {}

    def test_sandbox_required(self):
        with pytest.raises(ValueError, match="sandbox"):
            servers.FTPServer((HOST, 0), handlers.FTPHandler)

    def test_log_start(self):
        handlers.FTPHandler.sandbox = PathSandbox(self.root)
        with servers.FTPServer((HOST, 0), handlers.FTPHandler) as server:
            with patch("tinyftpd.servers.logger") as logger:
                logger.handlers = []
                with patch("tinyftpd.servers.config_logging") as clog:
                    server._log_start()
                assert clog.called
            msgs = [x[0][0] % x[0][1:] for x in logger.info.call_args_list]
        assert any("starting FTP server" in x for x in msgs)
        assert any("concurrency model: async" in x for x in msgs)
        assert any(self.root in x for x in msgs)

    def test_concurrency_info(self):
        handlers.FTPHandler.sandbox = PathSandbox(self.root)
        servers.ThreadedFTPServer.max_workers = 7
        with servers.ThreadedFTPServer(
            (HOST, 0), handlers.FTPHandler
        ) as server:
            info = server._concurrency_info()
        assert info == "multi-thread (max_workers=7)"

    def test_handler_error_does_not_kill_server(self):
        self.server = self.server_class(self.root)
        self.server.start()
        with patch.object(
            handlers.FTPHandler, "handle", side_effect=ZeroDivisionError
        ):
            with contextlib.closing(socket.socket()) as sock:
                sock.settimeout(GLOBAL_TIMEOUT)
                sock.connect((self.server.host, self.server.port))
                assert sock.recv(1024) == b""
        # next connections are served normally
        self.client = connect_client(self.server)


class TestThreadedFTPServer(TinyftpdTestCase):
    """Tests for the worker pool of ThreadedFTPServer."""

    server_class = _TFTPd

    def setUp(self):
        super().setUp()
        servers.ThreadedFTPServer.max_workers = 1
        self.server = self.server_class(self.make_root())
        self.server.start()
        self.client = connect_client(self.server)

    def tearDown(self):
        close_client(self.client)
        if self.server is not None:
            self.server.stop()
        super().tearDown()

    def connect_raw(self):
        sock = socket.create_connection(
            (self.server.host, self.server.port), timeout=GLOBAL_TIMEOUT
        )
        self.addCleanup(sock.close)
        return sock

    def test_exceeding_connection_is_queued(self):
        sock = self.connect_raw()
        # the only worker is busy: the TCP connection is accepted but
        # not greeted
        sock.settimeout(0.3)
        with pytest.raises(socket.timeout):
            sock.recv(1024)
        # a worker becomes available
        self.client.quit()
        sock.settimeout(GLOBAL_TIMEOUT)
        assert sock.recv(1024).startswith(b"220")
        sock.sendall(b"QUIT\r\n")
        assert sock.recv(1024).startswith(b"221")

    def test_sessions_are_independent(self):
        self.server.stop()
        servers.ThreadedFTPServer.max_workers = 2
        self.server = self.server_class(self.make_root())
        self.server.start()
        close_client(self.client)
        self.client = connect_client(self.server)
        other = connect_client(self.server)
        self.addCleanup(close_client, other)
        self.client.sendcmd("USER bob")
        # logging out one session does not affect the other
        assert other.sendcmd("PWD").startswith("257")
        with pytest.raises(ftplib.error_perm, match="530"):
            self.client.sendcmd("PWD")

    def test_sessions_use_own_ioloop(self):
        self.client.quit()
        with patch.object(
            IOLoop, "factory", side_effect=IOLoop.factory
        ) as factory:
            other = connect_client(self.server)
            self.addCleanup(close_client, other)
            assert other.sendcmd("PWD").startswith("257")
        assert factory.called
        # the acceptor's own loop only holds the listening socket
        assert len(self.server.server.ioloop.socket_map) == 1

    def test_close_all_drops_queued(self):
        sock = self.connect_raw()
        call_until(lambda: len(self.server.server._queued), "ret == 1")
        self.server.stop()
        self.server = None
        # both the running and the queued session are gone
        assert sock.recv(1024) == b""
        self.client.sock.settimeout(GLOBAL_TIMEOUT)
        assert self.client.sock.recv(1024) == b""


# =====================================================================
# --- threaded FTP server mixin tests
# =====================================================================

# What we're going to do here is repeat the functional tests
# defined in test_functional.py but by using a different concurrency
# model (a worker thread per connection instead of async).
# This is useful as we reuse the existent functional tests which are
# supposed to work no matter what the concurrency model is.


class ThreadFTPTestMixin:
    server_class = _TFTPd


class TestAuthenticationThreadMixin(ThreadFTPTestMixin, TestAuthentication):
    pass


class TestCommandParsingThreadMixin(ThreadFTPTestMixin, TestCommandParsing):
    pass


class TestNavigationThreadMixin(ThreadFTPTestMixin, TestNavigation):
    pass


class TestPortThreadMixin(ThreadFTPTestMixin, TestPort):
    pass


class TestListThreadMixin(ThreadFTPTestMixin, TestList):
    pass


class TestQuitThreadMixin(ThreadFTPTestMixin, TestQuit):
    pass


class TestEndToEndThreadMixin(ThreadFTPTestMixin, TestEndToEnd):
    pass
