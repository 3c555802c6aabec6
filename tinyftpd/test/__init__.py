# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import contextlib
import ftplib
import functools
import logging
import os
import shutil
import socket
import stat
import tempfile
import threading
import time
import unittest
import warnings

import psutil

from tinyftpd.authorizers import DummyAuthorizer
from tinyftpd.filesystems import PathSandbox
from tinyftpd.handlers import FTPHandler
from tinyftpd.servers import FTPServer


POSIX = os.name == "posix"
WINDOWS = os.name == "nt"
GITHUB_ACTIONS = "GITHUB_ACTIONS" in os.environ
CI_TESTING = GITHUB_ACTIONS

# Attempt to use IP rather than hostname (test suite will run a lot faster)
try:
    HOST = socket.gethostbyname("localhost")
except OSError:
    HOST = "localhost"

USER = "alice"
PASSWD = "123456"
# Use PID to disambiguate file name for parallel testing.
TESTFN_PREFIX = f"tinyftpd-tmp-{os.getpid()}-"
GLOBAL_TIMEOUT = 2
if CI_TESTING:
    GLOBAL_TIMEOUT *= 3


class TinyftpdTestCase(unittest.TestCase):
    """All test classes inherit from this one."""

    def setUp(self):
        super().setUp()
        reset_server_opts()

    def __str__(self):
        # Print a full path representation of the single unit tests
        # being run.
        fqmod = self.__class__.__module__
        if not fqmod.startswith("tinyftpd."):
            fqmod = "tinyftpd.test." + fqmod
        return f"{fqmod}.{self.__class__.__name__}.{self._testMethodName}"

    def make_root(self):
        """Create a temporary directory to be served and return its
        canonical path.
        """
        root = os.path.realpath(tempfile.mkdtemp(prefix=TESTFN_PREFIX))
        self.addCleanup(safe_rmpath, root)
        return root


def close_client(session):
    """Closes a ftplib.FTP client session."""
    try:
        if session.sock is not None:
            try:
                resp = session.quit()
            except Exception:
                pass
            else:
                # ...just to make sure the server isn't replying to some
                # pending command.
                assert resp.startswith("221"), resp
    finally:
        session.close()


def safe_rmpath(path):
    """Convenience function for removing temporary test files or dirs."""
    try:
        st = os.lstat(path)
        if stat.S_ISDIR(st.st_mode):
            shutil.rmtree(path)
        else:
            os.remove(path)
    except FileNotFoundError:
        pass


def touch(name, data=b""):
    """Create a file and return its name."""
    with open(name, "wb") as f:
        f.write(data)
        return f.name


def get_free_port(host=HOST):
    """Return a TCP port nobody is listening on (technically racy)."""
    with contextlib.closing(socket.socket()) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def disable_log_warning(fun):
    """Temporarily set FTP server's logging level to ERROR."""

    @functools.wraps(fun)
    def wrapper(self, *args, **kwargs):
        logger = logging.getLogger("tinyftpd")
        level = logger.getEffectiveLevel()
        logger.setLevel(logging.ERROR)
        try:
            return fun(self, *args, **kwargs)
        finally:
            logger.setLevel(level)

    return wrapper


def call_until(fun, expr, timeout=GLOBAL_TIMEOUT):
    """Keep calling function for timeout secs and exit if eval()
    expression is True.
    """
    stop_at = time.time() + timeout
    while time.time() < stop_at:
        ret = fun()
        if eval(expr):
            return ret
        time.sleep(0.001)
    raise RuntimeError(f"timed out (ret={ret!r})")


def retr_list(client):
    """Issue PORT + LIST over an ftplib.FTP client in active mode,
    without the TYPE negotiation ftplib.retrlines() would do.
    Return the raw listing bytes and the final reply.
    """
    with contextlib.closing(socket.socket()) as sock:
        sock.bind((HOST, 0))
        sock.listen(1)
        sock.settimeout(GLOBAL_TIMEOUT)
        client.sendport(HOST, sock.getsockname()[1])
        resp = client.sendcmd("LIST")
        assert resp.startswith("150"), resp
        conn, _ = sock.accept()
        with contextlib.closing(conn):
            conn.settimeout(GLOBAL_TIMEOUT)
            chunks = []
            while True:
                chunk = conn.recv(8192)
                if not chunk:
                    break
                chunks.append(chunk)
    return b"".join(chunks), client.voidresp()


def setup_server(handler, server_class, root, addr=None):
    addr = (HOST, 0) if addr is None else addr
    authorizer = DummyAuthorizer()
    authorizer.add_user(USER, PASSWD)
    authorizer.add_user("bob", "abcdef")
    handler.authorizer = authorizer
    handler.sandbox = PathSandbox(root)
    # lower buffer sizes = more "loops" while transferring data
    # = less false positives
    handler.dtp_handler.ac_in_buffer_size = 4096
    handler.dtp_handler.ac_out_buffer_size = 4096
    server = server_class(addr, handler)
    return server


def assert_free_resources():
    # check orphaned threads
    ts = threading.enumerate()
    assert len(ts) == 1, ts
    # check unclosed connections
    if POSIX:
        this_proc = psutil.Process()
        cons = [
            x
            for x in this_proc.net_connections("tcp")
            if x.status
            not in (psutil.CONN_CLOSE_WAIT, psutil.CONN_TIME_WAIT)
        ]
        if cons:
            warnings.warn(
                f"some connections didn't close (pid={os.getpid()!r})"
                f" {str(cons)!r}",
                UserWarning,
                stacklevel=2,
            )


def reset_server_opts():
    # Since all tinyftpd configurable "options" are class attributes
    # we reset them at module.class level.
    import tinyftpd.data  # noqa: PLC0415
    import tinyftpd.handlers  # noqa: PLC0415
    import tinyftpd.servers  # noqa: PLC0415

    # Control handler.
    klass = tinyftpd.handlers.FTPHandler
    klass.authorizer = DummyAuthorizer()
    klass.sandbox = None
    klass.banner = "tinyftpd ready."
    klass.timeout = 300
    klass.encoding = "utf8"
    klass.unicode_errors = "replace"
    klass.max_line_length = 2048
    klass.ac_in_buffer_size = 4096
    klass.ac_out_buffer_size = 4096

    # Data handlers.
    tinyftpd.data.ActiveDTP.timeout = 30
    klass = tinyftpd.data.DTPHandler
    klass.timeout = 300
    klass.ac_in_buffer_size = 4096
    klass.ac_out_buffer_size = 4096

    # Acceptors.
    tinyftpd.servers.FTPServer.max_cons = 0
    tinyftpd.servers.ThreadedFTPServer.max_cons = 0
    tinyftpd.servers.ThreadedFTPServer.max_workers = 32
    tinyftpd.servers.ThreadedFTPServer.poll_timeout = 0.05


class FtpdThreadWrapper(threading.Thread):
    """A threaded FTP server used for running tests.
    This is basically a modified version of the FTPServer class which
    wraps the polling loop into a thread.
    The instance returned can be start()ed and stop()ped.
    """

    handler = FTPHandler
    server_class = FTPServer
    poll_interval = 0.001 if CI_TESTING else 0.000001
    # Makes the thread stop on interpreter exit.
    daemon = True

    def __init__(self, root, addr=None):
        super().__init__(name="test-ftpd")
        self.root = root
        self.server = setup_server(
            self.handler, self.server_class, root, addr=addr
        )
        self.host, self.port = self.server.socket.getsockname()[:2]

        self.lock = threading.Lock()
        self._stop_flag = False
        self._event_stop = threading.Event()

    def run(self):
        try:
            while not self._stop_flag:
                with self.lock:
                    self.server.serve_forever(
                        timeout=self.poll_interval, blocking=False
                    )
        finally:
            self._event_stop.set()

    def stop(self):
        self._stop_flag = True  # signal the main loop to exit
        self._event_stop.wait()
        self.server.close_all()
        self.join()
        reset_server_opts()
        assert_free_resources()


def connect_client(server, login=True, timeout=GLOBAL_TIMEOUT):
    """Return an ftplib.FTP client connected to the test server,
    logged in as USER unless 'login' is False.
    """
    client = ftplib.FTP(timeout=timeout)
    client.connect(server.host, server.port)
    if login:
        client.login(USER, PASSWD)
    client.set_pasv(False)
    return client
