# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""Active-mode data channel.

ActiveDTP connects to the address the client advertised with PORT;
once connected the socket is handed to a DTPHandler instance which
moves the payload. Whatever the outcome, exactly one final reply is
sent on the control channel (226 or 426) and the control channel is
notified through its _on_dtp_close() method.
"""

import asynchat
import os
import socket
import traceback

from .exceptions import _FileReadWriteError
from .ioloop import _ERRNOS_DISCONNECTED
from .ioloop import AsyncChat
from .ioloop import Connector
from .ioloop import timer
from .log import debug
from .log import logger
from .utils import strerror

__all__ = ["ActiveDTP", "DTPHandler"]


class ActiveDTP(Connector):
    """Connects to remote client and dispatches the resulting connection
    to DTPHandler. Used for handling PORT command.

     - (int) timeout: the timeout for us to establish connection with
       the client's listening data socket (defaults 30). It is distinct
       from the control channel idle timeout.
    """

    timeout = 30

    def __init__(self, ip, port, cmd_channel):
        """Initialize the active data channel attempting to connect
        to remote data socket.

         - (str) ip: the remote IP address.
         - (int) port: the remote port.
         - (instance) cmd_channel: the command channel class instance.
        """
        Connector.__init__(self, ioloop=cmd_channel.ioloop)
        self.cmd_channel = cmd_channel
        self.log = cmd_channel.log
        self.log_exception = cmd_channel.log_exception
        self._closed = False
        self._idler = None
        self._normalized_addr = f"{ip}:{port}"
        # lets the control channel close us if it goes away first
        cmd_channel._dtp_connector = self
        if self.timeout:
            self._idler = self.ioloop.call_later(
                self.timeout, self.handle_timeout, _errback=self.handle_error
            )
        debug(f"connecting to {self._normalized_addr}", inst=self)
        try:
            self.connect_af_unspecified((ip, port))
        except (socket.gaierror, OSError) as err:
            self._fail(strerror(err))

    def __repr__(self):
        return f"<{self.__class__.__name__}({self._normalized_addr})>"

    def readable(self):
        return False

    def handle_write(self):
        # without overriding this we would get an "unhandled write
        # event" message from asyncore once connected
        pass

    def handle_connect(self):
        """Called when connection is established."""
        self.del_channel()
        self._cancel_idler()
        if not self.cmd_channel.connected:
            return self.close()
        # delegate such connection to DTP handler
        handler = self.cmd_channel.dtp_handler(self.socket, self.cmd_channel)
        # the socket now belongs to the DTP handler
        self._closed = True
        if self.cmd_channel._dtp_connector is self:
            self.cmd_channel._dtp_connector = None
        if handler.connected:
            self.log(
                f"Data connection established with {self._normalized_addr}.",
                logfun=logger.debug,
            )
            self.cmd_channel.data_channel = handler
            self.cmd_channel._on_dtp_connection()

    def handle_timeout(self):
        self._fail("timed out")

    def handle_close(self):
        # called in case the fd appears in the list of exceptional
        # fds, meaning connect() failed
        try:
            err = self.socket.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        except OSError as exc:
            err = exc.errno
        self._fail(os.strerror(err) if err else "connection closed")

    def handle_error(self):
        """Called to handle any uncaught exceptions."""
        try:
            raise  # noqa: PLE0704
        except (socket.gaierror, OSError) as err:
            reason = strerror(err)
        except Exception:
            self.log_exception(self)
            reason = "internal error"
        try:
            self._fail(reason)
        except Exception:
            logger.critical(traceback.format_exc())

    def _fail(self, reason):
        if self._closed:
            return
        self.close()
        if self.cmd_channel.connected:
            msg = f"Data connection failed: {reason}."
            self.cmd_channel.respond("426 " + msg, logfun=logger.info)
            self.log(
                f"Can't connect to {self._normalized_addr}: {reason}.",
                logfun=logger.info,
            )
        self.cmd_channel._on_dtp_close()

    def _cancel_idler(self):
        if self._idler is not None and not self._idler.cancelled:
            self._idler.cancel()

    def close(self):
        debug("call: close()", inst=self)
        if not self._closed:
            self._closed = True
            Connector.close(self)
            self._cancel_idler()
            if self.cmd_channel._dtp_connector is self:
                self.cmd_channel._dtp_connector = None


class DTPHandler(AsyncChat):
    """Class handling server-data-transfer-process (server-DTP, see
    RFC-959) managing data-transfer operations involving sending
    and receiving data.

    Class attributes:

     - (int) timeout: the timeout which roughly is the maximum time we
       permit data transfers to stall for with no progress. If the
       timeout triggers the transfer is aborted (defaults 300).

     - (int) ac_in_buffer_size: incoming data buffer size (defaults 8192)

     - (int) ac_out_buffer_size: outgoing data buffer size (defaults 8192)
    """

    timeout = 300
    ac_in_buffer_size = 8192
    ac_out_buffer_size = 8192

    def __init__(self, sock, cmd_channel):
        """Initialize the data channel.

        - (instance) sock: the socket object instance of the newly
           established connection.
        - (instance) cmd_channel: the command channel class instance.
        """
        self.cmd_channel = cmd_channel
        self.file_obj = None
        self.receive = False
        self.transfer_finished = False
        self.tot_bytes_sent = 0
        self.tot_bytes_received = 0
        self.cmd = None
        self.log = cmd_channel.log
        self.log_exception = cmd_channel.log_exception
        self._lastdata = 0
        self._start_time = timer()
        self._resp = ()
        self._idler = None
        AsyncChat.__init__(self, sock, ioloop=cmd_channel.ioloop)
        if not self.connected:
            # the peer went away between connect() and now
            self._resp = (
                "426 Data connection failed: connection closed.",
                logger.info,
            )
            self.close()
            return
        if self.timeout:
            self._idler = self.ioloop.call_every(
                self.timeout, self.handle_timeout, _errback=self.handle_error
            )

    def __repr__(self):
        return f"<{self.__class__.__name__}({self.cmd_channel.get_repr_info()})>"

    __str__ = __repr__

    # --- sending / receiving

    def push(self, data):
        """Send the whole buffer over the data channel."""
        AsyncChat.push(self, data)

    def push_with_producer(self, producer):
        """Stream data from a producer, one chunk at a time."""
        AsyncChat.push_with_producer(self, producer)

    def enable_receiving(self, file_obj, cmd):
        """Enable receiving of data over the channel, writing each
        chunk to 'file_obj' as it arrives.
        """
        self.file_obj = file_obj
        self.cmd = cmd
        self.receive = True

    def get_transmitted_bytes(self):
        """Return the number of transmitted bytes."""
        return self.tot_bytes_sent + self.tot_bytes_received

    def get_elapsed_time(self):
        """Return the transfer elapsed time in seconds."""
        return timer() - self._start_time

    def transfer_in_progress(self):
        """Return True if a transfer is in progress, else False."""
        return self.get_transmitted_bytes() != 0

    # --- connection

    def send(self, data):
        result = AsyncChat.send(self, data)
        self.tot_bytes_sent += result
        return result

    def handle_read(self):
        """Called when there is data waiting to be read."""
        chunk = self.recv(self.ac_in_buffer_size)
        if not chunk:
            # asyncore's recv() already called handle_close()
            return
        self.tot_bytes_received += len(chunk)
        try:
            self.file_obj.write(chunk)
        except OSError as err:
            raise _FileReadWriteError(err.errno, err.strerror) from err

    handle_read_event = handle_read  # small speedup

    def readable(self):
        """Predicate for inclusion in the readable for select()."""
        return self.receive

    def writable(self):
        """Predicate for inclusion in the writable for select()."""
        return not self.receive and asynchat.async_chat.writable(self)

    def handle_timeout(self):
        """Called cyclically to check if data transfer is stalling with
        no progress in which case the transfer is aborted.
        """
        if self.get_transmitted_bytes() > self._lastdata:
            self._lastdata = self.get_transmitted_bytes()
        else:
            self._resp = (
                "426 Data connection timed out; transfer aborted.",
                logger.info,
            )
            self.close()

    def handle_error(self):
        """Called when an exception is raised and not otherwise handled."""
        try:
            raise  # noqa: PLE0704
        # an error could occur in case we fail reading / writing
        # from / to file (e.g. file system gets full)
        except _FileReadWriteError as err:
            error = strerror(err)
        except OSError as err:
            if err.errno in _ERRNOS_DISCONNECTED:
                error = "Connection closed"
            else:
                error = strerror(err)
        except Exception:
            # some other exception occurred;  we don't want to provide
            # confidential error messages
            self.log_exception(self)
            error = "Internal error"
        try:
            self._resp = (f"426 {error}; transfer aborted.", logger.warning)
            self.close()
        except Exception:
            logger.critical(traceback.format_exc())

    def handle_close(self):
        """Called when the socket is closed."""
        # If we used channel for receiving we assume that transfer is
        # finished when client closes the connection, if we used channel
        # for sending we have to check that all data has been sent
        # (responding with 226) or not (responding with 426).
        if not self._closed:
            if self.receive:
                self.transfer_finished = True
            else:
                self.transfer_finished = len(self.producer_fifo) == 0
            try:
                if self.transfer_finished:
                    self._resp = ("226 Transfer complete.", logger.debug)
                else:
                    tot_bytes = self.get_transmitted_bytes()
                    self._resp = (
                        f"426 Transfer aborted; {tot_bytes} bytes transmitted.",
                        logger.debug,
                    )
            finally:
                self.close()

    def close(self):
        """Close the data channel, first attempting to close any remaining
        file handles."""
        debug("call: close()", inst=self)
        if not self._closed:
            # RFC-959 says we must close the connection before replying
            AsyncChat.close(self)

            # Close file object before responding successfully to client
            if self.file_obj is not None and not self.file_obj.closed:
                self.file_obj.close()

            if self._idler is not None and not self._idler.cancelled:
                self._idler.cancel()

            if self._resp and self.cmd_channel.connected:
                self.cmd_channel.respond(self._resp[0], logfun=self._resp[1])

            self.log(
                "%s %s completed=%s bytes=%s seconds=%s" % (
                    self.cmd or "transfer",
                    "received" if self.receive else "sent",
                    int(self.transfer_finished),
                    self.get_transmitted_bytes(),
                    round(self.get_elapsed_time(), 3),
                ),
                logfun=logger.debug,
            )
            self.cmd_channel._on_dtp_close()
