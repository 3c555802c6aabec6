# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
This module contains the main FTPServer class which listens on a
host:port and dispatches the incoming connections to a handler.
The concurrency is handled asynchronously by the main process thread,
meaning the handler cannot block otherwise the whole server will hang.

ThreadedFTPServer changes the concurrency model: the main thread is
still async-based and only accepts new connections, while every
connection is served by one thread of a fixed-size worker pool which
internally runs its own IO loop. Connections exceeding the pool size
wait in the pool queue until a worker is free.
"""

import concurrent.futures
import os
import threading
import traceback

from .ioloop import Acceptor
from .ioloop import IOLoop
from .log import config_logging
from .log import logger

__all__ = ["FTPServer", "ThreadedFTPServer"]


# ===================================================================
# --- base class
# ===================================================================


class FTPServer(Acceptor):
    """Creates a socket listening on <address>, dispatching the requests
    to a <handler> (typically FTPHandler class).

    Depending on the type of address specified IPv4 or IPv6 connections
    (or both, depending from the underlying system) will be accepted.

    All relevant session information is stored in class attributes
    described below.

     - (int) max_cons:
        number of maximum simultaneous connections accepted (defaults
        to 512). Can be set to 0 for unlimited but it is recommended
        to always have a limit to avoid running out of file descriptors
        (DoS).
    """

    max_cons = 512

    def __init__(self, address_or_socket, handler, ioloop=None, backlog=100):
        """Creates a socket listening on 'address' dispatching
        connections to a 'handler'.

         - (tuple) address_or_socket: the (host, port) pair on which
           the command channel will listen for incoming connections or
           an existent socket object.

         - (instance) handler: the handler class to use.

         - (instance) ioloop: a tinyftpd.ioloop.IOLoop instance

         - (int) backlog: the maximum number of queued connections
           passed to listen(). If a connection request arrives when
           the queue is full the client may raise ECONNRESET.
           Defaults to 100.
        """
        # in case the handler is not properly configured we want errors
        # to be raised here rather than later, when client connects
        if getattr(handler, "sandbox", None) is None:
            raise ValueError("handler.sandbox must be set (a PathSandbox)")
        Acceptor.__init__(self, ioloop=ioloop)
        self.handler = handler
        self.backlog = backlog
        if callable(getattr(address_or_socket, "listen", None)):
            sock = address_or_socket
            sock.setblocking(False)
            self.set_socket(sock)
            self._af = sock.family
        else:
            self._af = self.bind_af_unspecified(address_or_socket)
        self.listen(backlog)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close_all()

    @property
    def address(self):
        """The address this server is listening on as a (ip, port) tuple."""
        return self.socket.getsockname()[:2]

    def _map_len(self):
        return len(self.ioloop.socket_map)

    def _accept_new_cons(self):
        """Return True if the server is willing to accept new connections."""
        if not self.max_cons:
            return True
        return self._map_len() <= self.max_cons

    def _log_start(self):
        if not logger.handlers:
            # If we get to this point it means the user hasn't
            # configured any logger. We want logging to be on
            # by default (stderr).
            config_logging()

        addr = self.address
        logger.info(
            ">>> starting FTP server on %s:%s, pid=%i <<<",
            addr[0],
            addr[1],
            os.getpid(),
        )
        logger.info("concurrency model: %s", self._concurrency_info())
        logger.info("root directory: %s", self.handler.sandbox.root)

    def _concurrency_info(self):
        return f"async (max_cons={self.max_cons})"

    def serve_forever(self, timeout=None, blocking=True, handle_exit=True):
        """Start serving.

         - (float) timeout: the timeout passed to the underlying IO
           loop expressed in seconds.

         - (bool) blocking: if False loop once and then return the
           timeout of the next scheduled call next to expire soonest
           (if any).

         - (bool) handle_exit: when True catches KeyboardInterrupt and
           SystemExit exceptions (generally caused by SIGTERM / SIGINT
           signals) and gracefully exits after cleaning up resources.
           Also, logs server start and stop.
        """
        if handle_exit:
            log = handle_exit and blocking
            if log:
                self._log_start()
            try:
                self.ioloop.loop(timeout, blocking)
            except (KeyboardInterrupt, SystemExit):
                logger.info("received interrupt signal")
            if blocking:
                if log:
                    logger.info(
                        ">>> shutting down FTP server (%s active socket "
                        "fds) <<<",
                        self._map_len(),
                    )
                self.close_all()
        else:
            self.ioloop.loop(timeout, blocking)

    def handle_accepted(self, sock, addr):
        """Called when remote client initiates a connection."""
        handler = None
        try:
            handler = self.handler(sock, self, ioloop=self.ioloop)
            if not handler.connected:
                return

            # For performance and security reasons we should always set a
            # limit for the number of file descriptors that socket_map
            # should contain.  When we're running out of such limit we'll
            # use the last available channel for sending a 421 response
            # to the client before disconnecting it.
            if not self._accept_new_cons():
                handler.handle_max_cons()
                return

            try:
                handler.handle()
            except Exception:
                handler.handle_error()
            else:
                return handler
        except Exception:
            # This is supposed to be an application bug that should
            # be fixed. We do not want to tear down the server though
            # (DoS). We just log the exception, hoping that someone
            # will eventually file a bug.
            logger.error(traceback.format_exc())
            if handler is not None:
                handler.close()

    def handle_error(self):
        """Called to handle any uncaught exceptions."""
        try:
            raise  # noqa: PLE0704
        except Exception:
            logger.error(traceback.format_exc())
        self.close()

    def close_all(self):
        """Stop serving and also disconnects all currently connected
        clients.
        """
        return self.ioloop.close()


# ===================================================================
# --- worker pool implementation
# ===================================================================


class ThreadedFTPServer(FTPServer):
    """A modified version of base FTPServer class which serves every
    connection from a fixed-size pool of worker threads.

     - (int) max_workers:
        the size of the worker pool, that is how many sessions are
        served at the same time (defaults to 32). Further connections
        are queued and greeted as soon as a worker is free.

     - (float) poll_timeout:
        the timeout passed to each worker's IOLoop.poll() call on every
        loop. Necessary since threads ignore KeyboardInterrupt.
    """

    max_workers = 32
    poll_timeout = 1.0

    def __init__(self, address_or_socket, handler, ioloop=None, backlog=100):
        FTPServer.__init__(self, address_or_socket, handler, ioloop, backlog)
        self._lock = threading.Lock()
        self._exit = threading.Event()
        self._executor = None
        # accepted sockets still waiting for a free worker
        self._queued = set()
        self._active = 0

    def _map_len(self):
        with self._lock:
            return self._active + len(self._queued)

    def _accept_new_cons(self):
        # exceeding connections are queued by the pool
        return True

    def _concurrency_info(self):
        return f"multi-thread (max_workers={self.max_workers})"

    def _get_executor(self):
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="tinyftpd"
            )
        return self._executor

    def handle_accepted(self, sock, addr):
        if self._exit.is_set():
            sock.close()
            return
        with self._lock:
            self._queued.add(sock)
        try:
            self._get_executor().submit(self._loop, sock, addr)
        except RuntimeError:
            # pool already shut down
            with self._lock:
                self._queued.discard(sock)
            sock.close()

    def _loop(self, sock, addr):
        """Serve a single connection with its own IO loop."""
        with self._lock:
            if sock not in self._queued:
                # closed by close_all() while waiting
                return
            self._queued.discard(sock)
            self._active += 1
        threading.current_thread().name = f"tinyftpd-{addr[0]}:{addr[1]}"
        ioloop = self.ioloop.factory()
        try:
            if self._exit.is_set():
                sock.close()
                return
            handler = self.handler(sock, self, ioloop=ioloop)
            if not handler.connected:
                return
            try:
                handler.handle()
            except Exception:
                handler.handle_error()

            # Here we localize variable access to minimize overhead.
            poll = ioloop.poll
            sched_poll = ioloop.sched.poll
            poll_timeout = self.poll_timeout
            soonest_timeout = poll_timeout

            while ioloop.socket_map and not self._exit.is_set():
                poll(timeout=soonest_timeout)
                soonest_timeout = sched_poll()
                if soonest_timeout is None or soonest_timeout > poll_timeout:
                    soonest_timeout = poll_timeout
        except Exception:
            logger.error(traceback.format_exc())
        finally:
            ioloop.close()
            with self._lock:
                self._active -= 1

    def serve_forever(self, timeout=None, blocking=True, handle_exit=True):
        self._exit.clear()
        FTPServer.serve_forever(self, timeout, blocking, handle_exit)

    def close_all(self):
        self._exit.set()
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        with self._lock:
            queued = list(self._queued)
            self._queued.clear()
        for sock in queued:
            sock.close()
        return FTPServer.close_all(self)
