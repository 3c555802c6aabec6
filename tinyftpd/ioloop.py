# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
A specialized IO loop on top of asyncore adding a scheduler for
delayed calls (timeouts) and per-instance socket maps, so that more
than one loop can run in the same process (one per worker thread).

This module is not supposed to be used directly unless you want to
include a new dispatcher which runs within the main FTP server loop,
in which case:
  __________________________________________________________________
 |                      |                                           |
 | INSTEAD OF           | ...USE:                                   |
 |______________________|___________________________________________|
 |                      |                                           |
 | asyncore.dispacher   | Acceptor (for servers)                    |
 | asyncore.dispacher   | Connector (for clients)                   |
 | asynchat.async_chat  | AsyncChat (for a full duplex connection ) |
 | asyncore.loop        | FTPServer.server_forever()                |
 |______________________|___________________________________________|

Follows a server example:

import socket
from tinyftpd.ioloop import IOLoop, Acceptor, AsyncChat

class Handler(AsyncChat):

    def __init__(self, sock):
        AsyncChat.__init__(self, sock)
        self.push(b'200 hello\r\n')
        self.close_when_done()

class Server(Acceptor):

    def __init__(self, host, port):
        Acceptor.__init__(self)
        self.create_socket(socket.AF_INET, socket.SOCK_STREAM)
        self.set_reuse_addr()
        self.bind((host, port))
        self.listen(5)

    def handle_accepted(self, sock, addr):
        Handler(sock)

server = Server('localhost', 2121)
IOLoop.instance().loop()
"""

import asynchat
import asyncore
import errno
import heapq
import os
import select
import socket
import sys
import threading
import time
import traceback

from .log import debug
from .log import logger

__all__ = ["Acceptor", "AsyncChat", "Connector", "IOLoop", "timer"]

timer = getattr(time, "monotonic", time.time)
_read = asyncore.read
_write = asyncore.write
_exception = asyncore._exception

# These errnos indicate that a connection has been abruptly terminated.
_ERRNOS_DISCONNECTED = {
    errno.ECONNRESET,
    errno.ENOTCONN,
    errno.ESHUTDOWN,
    errno.ECONNABORTED,
    errno.EPIPE,
    errno.EBADF,
    errno.ETIMEDOUT,
}
if hasattr(errno, "WSAECONNRESET"):
    _ERRNOS_DISCONNECTED.add(errno.WSAECONNRESET)
if hasattr(errno, "WSAECONNABORTED"):
    _ERRNOS_DISCONNECTED.add(errno.WSAECONNABORTED)

# These errnos indicate that a non-blocking operation must be retried
# at a later time.
_ERRNOS_RETRY = {errno.EAGAIN, errno.EWOULDBLOCK}
if hasattr(errno, "WSAEWOULDBLOCK"):
    _ERRNOS_RETRY.add(errno.WSAEWOULDBLOCK)


# ===================================================================
# --- scheduler
# ===================================================================


class _Scheduler:
    """Run the scheduled functions due to expire soonest (if any)."""

    def __init__(self):
        # the heap used for the scheduled tasks
        self._tasks = []
        self._cancellations = 0

    def poll(self):
        """Run the scheduled functions due to expire soonest and
        return the timeout of the next one (if any, else None).
        """
        now = timer()
        calls = []
        while self._tasks:
            if now < self._tasks[0].timeout:
                break
            call = heapq.heappop(self._tasks)
            if call.cancelled:
                self._cancellations -= 1
            else:
                calls.append(call)

        for call in calls:
            if call._repush:
                heapq.heappush(self._tasks, call)
                call._repush = False
                continue
            try:
                call.call()
            except Exception:
                logger.error(traceback.format_exc())

        # remove cancelled tasks and re-heapify the queue if the
        # number of cancelled tasks is more than the half of the
        # entire queue
        if self._cancellations > 512 and self._cancellations > (
            len(self._tasks) >> 1
        ):
            debug(f"re-heapifying {self._cancellations} cancelled tasks")
            self.reheapify()

        try:
            return max(0, self._tasks[0].timeout - now)
        except IndexError:
            pass

    def register(self, what):
        """Register a _CallLater instance."""
        heapq.heappush(self._tasks, what)

    def unregister(self, what):
        """Unregister a _CallLater instance.
        The actual unregistration will happen at a later time though.
        """
        self._cancellations += 1

    def reheapify(self):
        """Get rid of cancelled calls and reinitialize the internal heap."""
        self._cancellations = 0
        self._tasks = [x for x in self._tasks if not x.cancelled]
        heapq.heapify(self._tasks)


class _CallLater:
    """Container object which instance is returned by ioloop.call_later()."""

    __slots__ = (
        "_args",
        "_delay",
        "_errback",
        "_kwargs",
        "_repush",
        "_sched",
        "_target",
        "cancelled",
        "timeout",
    )

    def __init__(self, seconds, target, *args, **kwargs):
        assert callable(target), f"{target} is not callable"
        assert (
            sys.maxsize >= seconds >= 0
        ), f"{seconds} is not greater than or equal to 0 seconds"
        self._delay = seconds
        self._target = target
        self._args = args
        self._kwargs = kwargs
        self._errback = kwargs.pop("_errback", None)
        self._sched = kwargs.pop("_scheduler")
        self._repush = False
        # seconds from the epoch at which to call the function
        if not seconds:
            self.timeout = 0
        else:
            self.timeout = timer() + self._delay
        self.cancelled = False
        self._sched.register(self)

    def __lt__(self, other):
        return self.timeout < other.timeout

    def __le__(self, other):
        return self.timeout <= other.timeout

    def __repr__(self):
        if self._target is None:
            sig = object.__repr__(self)
        else:
            sig = repr(self._target)
        sig += " args=%s, kwargs=%s, cancelled=%s, secs=%s" % (
            self._args or "[]",
            self._kwargs or "{}",
            self.cancelled,
            self._delay,
        )
        return f"<{sig}>"

    __str__ = __repr__

    def _post_call(self, exc):
        if not self.cancelled:
            self.cancel()

    def call(self):
        """Call this scheduled function."""
        assert not self.cancelled, "already cancelled"
        exc = None
        try:
            self._target(*self._args, **self._kwargs)
        except Exception as _:
            exc = _
            if self._errback is not None:
                self._errback()
            else:
                raise
        finally:
            self._post_call(exc)

    def reset(self):
        """Reschedule this call resetting the current countdown."""
        assert not self.cancelled, "already cancelled"
        self.timeout = timer() + self._delay
        self._repush = True

    def cancel(self):
        """Unschedule this call."""
        if not self.cancelled:
            self.cancelled = True
            self._target = self._args = self._kwargs = self._errback = None
            self._sched.unregister(self)


class _CallEvery(_CallLater):
    """Container object which instance is returned by IOLoop.call_every()."""

    def _post_call(self, exc):
        if not self.cancelled:
            if exc:
                self.cancel()
            else:
                self.timeout = timer() + self._delay
                self._sched.register(self)


# ===================================================================
# --- the loop
# ===================================================================


class IOLoop:
    """select()-based IO loop with its own socket map and scheduler.
    Dispatchers are polled according to their readable() and
    writable() predicates, as plain asyncore does.
    """

    READ = 1
    WRITE = 2
    _instance = None
    _lock = threading.Lock()

    def __init__(self):
        self.socket_map = {}
        self.sched = _Scheduler()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def __repr__(self):
        status = [self.__class__.__module__ + "." + self.__class__.__name__]
        status.append(
            f"(fds={len(self.socket_map)}, tasks={len(self.sched._tasks)})"
        )
        return "<%s at %#x>" % (" ".join(status), id(self))

    __str__ = __repr__

    @classmethod
    def instance(cls):
        """Return a global IOLoop instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def factory(cls):
        """Constructs a new IOLoop instance."""
        return cls()

    def poll(self, timeout):
        """Poll once. A None timeout means wait until some socket
        becomes ready.
        """
        r, w, e = [], [], []
        for fd, obj in list(self.socket_map.items()):
            is_r = obj.readable()
            is_w = obj.writable()
            if is_r:
                r.append(fd)
            # accepting sockets should not be writable
            if is_w and not obj.accepting:
                w.append(fd)
            if is_r or is_w:
                e.append(fd)
        if not (r or w or e):
            time.sleep(0.01 if timeout is None else timeout)
            return

        try:
            r, w, e = select.select(r, w, e, timeout)
        except InterruptedError:
            return

        smap_get = self.socket_map.get
        for fd in r:
            obj = smap_get(fd)
            if obj is not None:
                _read(obj)
        for fd in w:
            obj = smap_get(fd)
            if obj is not None:
                _write(obj)
        for fd in e:
            obj = smap_get(fd)
            if obj is not None:
                _exception(obj)

    def loop(self, timeout=None, blocking=True):
        """Start the asynchronous IO loop.

        - (float) timeout: the timeout passed to the underlying
          multiplex syscall (select()).

        - (bool) blocking: if False loop once and then return the
          timeout of the next scheduled call next to expire soonest
          (if any, else None).
        """
        if blocking:
            # localize variable access to minimize overhead
            poll = self.poll
            socket_map = self.socket_map
            sched_poll = self.sched.poll

            if timeout is not None:
                while socket_map:
                    poll(timeout)
                    sched_poll()
            else:
                soonest_timeout = None
                while socket_map:
                    poll(soonest_timeout)
                    soonest_timeout = sched_poll()
        else:
            sched = self.sched
            if self.socket_map:
                self.poll(timeout)
            if sched._tasks:
                return sched.poll()

    def call_later(self, seconds, target, *args, **kwargs):
        """Calls a function at a later time.
        It can be used to asynchronously schedule a call within the polling
        loop without blocking it. The instance returned is an object that
        can be used to cancel or reschedule the call.

         - (int) seconds: the number of seconds to wait
         - (obj) target: the callable object to call later
         - args: the arguments to call it with
         - kwargs: the keyword arguments to call it with; a special
           '_errback' parameter can be passed: it is a callable
           called in case target function raises an exception.
        """
        kwargs["_scheduler"] = self.sched
        return _CallLater(seconds, target, *args, **kwargs)

    def call_every(self, seconds, target, *args, **kwargs):
        """Schedules the given callback to be called periodically."""
        kwargs["_scheduler"] = self.sched
        return _CallEvery(seconds, target, *args, **kwargs)

    def close(self):
        """Closes the IOLoop, freeing any resources used."""
        debug("closing IOLoop", self)
        if self.__class__._instance is self:
            self.__class__._instance = None

        # free connections
        instances = sorted(self.socket_map.values(), key=lambda x: x._fileno)
        for inst in instances:
            try:
                inst.close()
            except OSError as err:
                if err.errno != errno.EBADF:
                    logger.error(traceback.format_exc())
            except Exception:
                logger.error(traceback.format_exc())
        self.socket_map.clear()

        # free scheduled functions
        for x in self.sched._tasks:
            try:
                if not x.cancelled:
                    x.cancel()
            except Exception:
                logger.error(traceback.format_exc())
        del self.sched._tasks[:]


# ===================================================================
# --- asyncore dispatchers
# ===================================================================

# these are overridden in order to register() dispatchers against
# the socket map of the IOLoop they belong to


class Acceptor(asyncore.dispatcher):

    def __init__(self, ioloop=None):
        self.ioloop = ioloop or IOLoop.instance()
        self._fileno = None
        asyncore.dispatcher.__init__(self, map=self.ioloop.socket_map)

    def bind_af_unspecified(self, addr):
        """Same as bind() but guesses address family from addr.
        Return the address family just determined.
        """
        assert self.socket is None
        host, port = addr
        if host == "":
            # When using bind() "" is a symbolic name meaning all
            # available interfaces. People might not know we're
            # using getaddrinfo() internally, which uses None
            # instead of "", so we'll make the conversion for them.
            host = None
        err = "getaddrinfo() returned an empty list"
        info = socket.getaddrinfo(
            host, port, socket.AF_UNSPEC, socket.SOCK_STREAM, 0,
            socket.AI_PASSIVE,
        )
        for res in info:
            self.socket = None
            af, socktype, _proto, _canonname, sa = res
            try:
                self.create_socket(af, socktype)
                self.set_reuse_addr()
                self.bind(sa)
            except OSError as _:
                err = _
                if self.socket is not None:
                    self.socket.close()
                    self.del_channel()
                    self.socket = None
                continue
            break
        if self.socket is None:
            self.del_channel()
            raise OSError(err)
        return af

    def handle_accept(self):
        try:
            sock, addr = self.accept()
        except TypeError:
            # sometimes accept() might return None
            return
        except OSError as err:
            # ECONNABORTED might be thrown on *BSD
            if err.errno != errno.ECONNABORTED:
                raise
        else:
            # sometimes addr == None instead of (ip, port)
            if addr is not None:
                self.handle_accepted(sock, addr)

    def handle_accepted(self, sock, addr):
        sock.close()
        self.log_info("unhandled accepted event", "warning")

    # overridden for convenience; avoid to reuse address on Windows
    if (os.name in ("nt", "ce")) or (sys.platform == "cygwin"):

        def set_reuse_addr(self):
            pass


class Connector(Acceptor):

    def connect_af_unspecified(self, addr, source_address=None):
        """Same as connect() but guesses address family from addr.
        Return the address family just determined.
        """
        assert self.socket is None
        host, port = addr
        err = "getaddrinfo() returned an empty list"
        info = socket.getaddrinfo(
            host, port, socket.AF_UNSPEC, socket.SOCK_STREAM, 0,
            socket.AI_NUMERICHOST,
        )
        for res in info:
            self.socket = None
            af, socktype, _proto, _canonname, sa = res
            try:
                self.create_socket(af, socktype)
                if source_address and af == socket.AF_INET:
                    self.bind(source_address)
                self.connect(sa)
            except OSError as _:
                err = _
                if self.socket is not None:
                    self.socket.close()
                    self.del_channel()
                    self.socket = None
                continue
            break
        if self.socket is None:
            self.del_channel()
            if isinstance(err, OSError):
                raise err
            raise OSError(err)
        return af


class AsyncChat(asynchat.async_chat):

    def __init__(self, sock=None, ioloop=None):
        self.ioloop = ioloop or IOLoop.instance()
        self._closed = False
        self._closing = False
        self._fileno = None
        asynchat.async_chat.__init__(self, sock, map=self.ioloop.socket_map)

    def close_when_done(self):
        if len(self.producer_fifo) == 0:
            self.handle_close()
        else:
            self._closing = True
            asynchat.async_chat.close_when_done(self)

    def close(self):
        if not self._closed:
            self._closed = True
            asynchat.async_chat.close(self)
