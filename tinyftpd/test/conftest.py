# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
pytest config file (file name has special meaning), executed before
running tests.

After each test we check that the test did not leave behind:

 - a server thread or a connection worker
 - open file descriptors (POSIX only)
 - dispatchers or scheduled calls in the global IOLoop; a leftover
   ActiveDTP or DTPHandler means a data connection was never closed

Class-level options are reset to their defaults once the test is over.
"""

import atexit
import os
import tempfile
import threading
import warnings

import psutil
import pytest

from tinyftpd.data import ActiveDTP
from tinyftpd.data import DTPHandler
from tinyftpd.ioloop import IOLoop

from . import POSIX
from . import TESTFN_PREFIX
from . import reset_server_opts
from . import safe_rmpath

this_proc = psutil.Process()


def warn(nodeid, msg):
    warnings.warn(f"{nodeid!r} {msg}", ResourceWarning, stacklevel=3)


def server_threads():
    return {
        t
        for t in threading.enumerate()
        if t.name == "test-ftpd" or t.name.startswith("tinyftpd-")
    }


def check_threads(nodeid, before):
    leaked = server_threads() - before
    if leaked:
        warn(nodeid, f"left server threads running: {leaked!r}")


def check_fds(nodeid, before):
    if POSIX:
        after = this_proc.num_fds()
        if after > before:
            warn(nodeid, f"left fds open: before={before}, after={after}")


def check_ioloop(nodeid):
    inst = IOLoop.instance()
    data_channels = [
        x
        for x in inst.socket_map.values()
        if isinstance(x, (ActiveDTP, DTPHandler))
    ]
    if data_channels:
        warn(nodeid, f"left data channels open: {data_channels!r}")
    elif inst.socket_map:
        warn(nodeid, f"left ioloop socket map: {inst.socket_map!r}")
    if inst.sched._tasks:
        warn(nodeid, f"left ioloop tasks: {inst.sched._tasks!r}")


@pytest.fixture(autouse=True, scope="function")
def for_each_test_method(request):
    threads = server_threads()
    fds = this_proc.num_fds() if POSIX else 0
    yield
    reset_server_opts()
    if request.session.testsfailed:
        return  # no need to warn if test already failed
    nodeid = request.node.nodeid
    check_threads(nodeid, threads)
    check_fds(nodeid, fds)
    check_ioloop(nodeid)


@atexit.register
def on_exit():
    dirname = tempfile.gettempdir()
    for name in os.listdir(dirname):
        if name.startswith(TESTFN_PREFIX):
            safe_rmpath(os.path.join(dirname, name))
