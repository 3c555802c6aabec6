# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import errno
import socket

from . import __ver__
from .authorizers import DummyAuthorizer
from .data import ActiveDTP
from .data import DTPHandler
from .exceptions import FilesystemError
from .ioloop import _ERRNOS_DISCONNECTED
from .ioloop import AsyncChat
from .log import debug
from .log import logger
from .utils import strerror

__all__ = ["FTPHandler", "parse_command", "proto_cmds"]

# queued in place of a line that exceeded max_line_length
_LINE_TOO_LONG = object()


# auth: the command needs a logged in user
# arg:  True == an argument is required, None == an argument is optional
#       (or ignored)
# help: the text returned by "HELP <cmd>"
proto_cmds = {
    "CWD": dict(
        auth=True,
        arg=True,
        help="Syntax: CWD <SP> dir-name (change working directory).",
    ),
    "EXIT": dict(
        auth=False,
        arg=None,
        help="Syntax: EXIT (synonym for QUIT).",
    ),
    "HELP": dict(
        auth=False,
        arg=None,
        help="Syntax: HELP [<SP> cmd] (show help).",
    ),
    "LIST": dict(
        auth=True,
        arg=None,
        help="Syntax: LIST (list the current directory).",
    ),
    "PASS": dict(
        auth=False,
        arg=True,
        help="Syntax: PASS <SP> password (set user password).",
    ),
    "PORT": dict(
        auth=True,
        arg=True,
        help="Syntax: PORT <sp> h,h,h,h,p,p (open active data connection).",
    ),
    "PWD": dict(
        auth=True,
        arg=None,
        help="Syntax: PWD (get current working directory).",
    ),
    "QUIT": dict(
        auth=False,
        arg=None,
        help="Syntax: QUIT (quit current session).",
    ),
    "USER": dict(
        auth=False,
        arg=True,
        help="Syntax: USER <SP> user-name (set username).",
    ),
}


def parse_command(line):
    """Split a command line into a (VERB, argument) tuple.

    The verb is upper-cased; the argument is whatever follows the
    first run of whitespace, internal spaces included, or an empty
    string.

    >>> parse_command("cwd  my docs ")
    ('CWD', 'my docs')
    """
    parts = line.strip().split(None, 1)
    if not parts:
        return "", ""
    cmd = parts[0].upper()
    arg = parts[1] if len(parts) > 1 else ""
    return cmd, arg


class FTPHandler(AsyncChat):
    """Implements the FTP server Protocol Interpreter (see RFC-959),
    handling commands received from the client on the control channel.

    All relevant session information is stored in class attributes
    reproduced below and can be modified before instantiating this
    class.

     - (int) timeout:
       The timeout which is the maximum time a remote client may spend
       between FTP commands. If the timeout triggers, the remote client
       will be kicked off. The countdown is suspended while a data
       transfer is in progress (defaults 300 seconds).

     - (str) banner: the string sent when client connects.

     - (instance) sandbox: the PathSandbox instance mapping client
       paths onto the served root directory. It must be set before
       the server starts.

     - (instance) authorizer: the authorizer used to authenticate
       users (defaults to an empty DummyAuthorizer).

     - (instance) active_dtp: class used for establishing the active
       data connection (defaults to ActiveDTP).

     - (instance) dtp_handler: class used for moving the payload once
       the data connection is up (defaults to DTPHandler).

     - (str) encoding: the encoding used on the control channel
       (defaults to "utf8").

     - (str) unicode_errors: the error handler passed to ''.encode()
       and ''.decode() (defaults to "replace").

     - (str) log_prefix:
       the prefix string preceding any log line; all instance
       attributes can be used as arguments.

     - (int) max_line_length: the longest command line accepted,
       longer ones are discarded (defaults 2048).
    """

    # these are overridable defaults

    # default classes
    sandbox = None
    authorizer = DummyAuthorizer()
    active_dtp = ActiveDTP
    dtp_handler = DTPHandler

    # session attributes (explained in the docstring)
    timeout = 300
    banner = f"tinyftpd {__ver__} ready."
    encoding = "utf8"
    unicode_errors = "replace"
    log_prefix = "[%(username)s]@%(remote_ip)s:%(remote_port)s"
    max_line_length = 2048
    proto_cmds = proto_cmds

    def __init__(self, conn, server, ioloop=None):
        """Initialize the command channel.

        - (instance) conn: the socket object instance of the newly
           established connection.
        - (instance) server: the server instance this handler belongs
           to.
        - (instance) ioloop: the IOLoop serving this connection.
        """
        # public session attributes
        self.server = server
        self.remote_ip = ""
        self.remote_port = ""
        self.authenticated = False
        self.username = ""
        self.cwd = "/"
        self.data_address = None
        self.data_channel = None

        # private session attributes
        self._pending_user = None
        self._in_buffer = []
        self._in_buffer_len = 0
        self._discarding = False
        self._pending_lines = []
        self._pending_call = None
        self._busy = False
        self._quit_pending = False
        self._out_dtp_queue = None
        self._dtp_connector = None
        self._idler = None

        try:
            AsyncChat.__init__(self, conn, ioloop=ioloop)
        except OSError as err:
            # if we get an exception here we want the dispatcher
            # instance to set socket attribute before closing, see:
            # https://github.com/giampaolo/pyftpdlib/issues/188
            AsyncChat.__init__(self, socket.socket(), ioloop=ioloop)
            self.close()
            debug(f"call: FTPHandler.__init__, err {err!r}", self)
            if err.errno == errno.EINVAL:
                # https://github.com/giampaolo/pyftpdlib/issues/143
                return
            self.handle_error()
            return
        self.set_terminator(b"\n")

        # connection properties
        try:
            self.remote_ip, self.remote_port = self.socket.getpeername()[:2]
        except OSError as err:
            debug(f"call: FTPHandler.__init__, err on getpeername() {err!r}",
                  self)
            # A race condition may occur if the other end is closing
            # before we can get the peername, hence ENOTCONN (see issue
            # #100) while EINVAL can occur on OSX (see issue #143).
            self.connected = False
            if err.errno in (errno.ENOTCONN, errno.EINVAL):
                self.close()
            else:
                self.handle_error()
            return
        if self.remote_ip.startswith("::ffff:"):
            # In this scenario, the server uses an IPv6 socket, but
            # the remote client is using IPv4 and its address is
            # represented as an IPv4-mapped IPv6 address which looks
            # like this ::ffff:151.12.5.65, see:
            # https://en.wikipedia.org/wiki/IPv6#IPv4-mapped_addresses
            self.remote_ip = self.remote_ip[7:]

    def get_repr_info(self):
        return f"addr={self.remote_ip}:{self.remote_port}, user={self.username!r}"

    def __repr__(self):
        return f"<{self.__class__.__name__}({self.get_repr_info()})>"

    __str__ = __repr__

    def handle(self):
        """Return a 220 'ready' response to the client over the command
        channel.
        """
        self.on_connect()
        self.respond(f"220 {self.banner}")
        self._start_idler()

    def handle_max_cons(self):
        """Called when limit for maximum number of connections is reached."""
        msg = "421 Too many connections. Service temporarily unavailable."
        self.respond(msg, logfun=logger.info)
        # If self.push is used, data could not be sent immediately in
        # which case a new "loop" will occur exposing us to the risk of
        # accepting new connections.  Since this could cause asyncore to
        # run out of fds in case we're using select() on Windows  we
        # immediately close the channel by using close() instead of
        # close_when_done(). If data has not been sent yet client will
        # be silently disconnected.
        self.close()

    # --- asyncore / asynchat overridden methods

    def readable(self):
        # if there's a quit pending we stop reading data from socket
        return not self._quit_pending and AsyncChat.readable(self)

    def collect_incoming_data(self, data):
        """Read incoming data and append to the input buffer."""
        if self._discarding:
            return
        self._in_buffer.append(data)
        self._in_buffer_len += len(data)
        # Flush buffer if it gets too long (possible DoS attacks).
        # RFC-959 specifies that a 500 response could be given in
        # such cases
        if self._in_buffer_len > self.max_line_length:
            if self._busy or self._pending_lines:
                # replied to in order, once the transfer is over
                self._pending_lines.append(_LINE_TOO_LONG)
            else:
                self.respond("500 Command too long.")
            self.log(
                "Command received exceeded buffer limit of "
                f"{self.max_line_length}.",
                logfun=logger.warning,
            )
            self._in_buffer = []
            self._in_buffer_len = 0
            # drop everything up to the next line terminator
            self._discarding = True

    def found_terminator(self):
        r"""Called when the incoming data stream matches the \n
        terminator.
        """
        if self._idler is not None and not self._idler.cancelled:
            self._idler.reset()

        if self._discarding:
            self._discarding = False
            return
        if self._quit_pending:
            # lines already buffered after QUIT are dropped
            return

        line = b"".join(self._in_buffer)
        line = line.decode(self.encoding, self.unicode_errors)
        self._in_buffer = []
        self._in_buffer_len = 0
        line = line.strip()
        if not line:
            return

        if self._busy or self._pending_lines:
            # a transfer reply is still due; keep replies ordered
            self._pending_lines.append(line)
            return
        self.pre_process_command(line)

    def pre_process_command(self, line):
        cmd, arg = parse_command(line)
        if cmd == "PASS":
            self.logline("<- PASS ******")
        else:
            self.logline(f"<- {line}")

        if cmd not in self.proto_cmds:
            self.respond(f'500 Command "{cmd}" not understood.')
            return

        # provide a limited set of commands if user isn't
        # authenticated yet
        if self.proto_cmds[cmd]["auth"] and not self.authenticated:
            self.respond("530 Log in with USER and PASS first.")
            return

        if self.proto_cmds[cmd]["arg"] and not arg:
            self.respond("501 Syntax error: command needs an argument.")
            return

        self.process_command(cmd, arg)

    def process_command(self, cmd, arg):
        """Process command by calling the corresponding ftp_* class
        method (e.g. for received command "CWD pub", ftp_CWD() method
        is called with "pub" as the argument).
        """
        method = getattr(self, "ftp_" + cmd)
        try:
            method(arg)
        except Exception:
            self.log_exception(self)
            self.respond("500 Internal error; command aborted.")

    def handle_error(self):
        try:
            raise  # noqa: PLE0704
        except OSError as err:
            if err.errno not in _ERRNOS_DISCONNECTED:
                self.log_exception(self)
        except Exception:
            self.log_exception(self)
        self.close()

    def handle_close(self):
        self.close()

    def close(self):
        """Close the current channel disconnecting the client."""
        debug("call: close()", inst=self)
        if not self._closed:
            AsyncChat.close(self)

            if self._dtp_connector is not None:
                self._dtp_connector.close()
            if self.data_channel is not None:
                self.data_channel.close()
                self.data_channel = None

            if self._idler is not None and not self._idler.cancelled:
                self._idler.cancel()
            if self._pending_call is not None:
                if not self._pending_call.cancelled:
                    self._pending_call.cancel()
                self._pending_call = None
            self._pending_lines = []
            self._out_dtp_queue = None

            if self.remote_ip:
                self.on_disconnect()

    # --- callbacks

    def on_connect(self):
        """Called when client connects."""
        self.log("FTP session opened (connect).")

    def on_disconnect(self):
        """Called when connection is closed."""
        self.log("Disconnected.")

    def on_login(self, username):
        """Called on user login."""
        self.log(f"USER {username!r} logged in.")

    def on_login_failed(self, username):
        """Called on failed login attempt."""
        self.log(f"USER {username!r} failed login.", logfun=logger.warning)

    def _on_dtp_connection(self):
        """Called every time the data channel connects. The pending
        listing, if any, is pushed into the data channel in a single
        write and the channel is closed once it has been flushed.
        """
        if self._out_dtp_queue is None or self.data_channel is None:
            return
        basedir, listing = self._out_dtp_queue
        self._out_dtp_queue = None
        data = "".join(self.sandbox.format_list(basedir, listing))
        self.data_channel.cmd = "LIST"
        self.data_channel.push(data.encode(self.encoding, self.unicode_errors))
        self.data_channel.close_when_done()

    def _on_dtp_close(self):
        """Called every time the data channel (or the attempt to open
        it) is closed, after the final transfer reply has been sent.
        """
        debug("call: _on_dtp_close()", inst=self)
        self.data_channel = None
        self._out_dtp_queue = None
        if self._closed:
            return
        self._busy = False
        self._start_idler()
        if self._pending_lines and self._pending_call is None:
            # not from within the data channel's own callbacks
            self._pending_call = self.ioloop.call_later(
                0, self._process_pending_lines, _errback=self.handle_error
            )

    def _process_pending_lines(self):
        self._pending_call = None
        while self._pending_lines:
            if self._busy or self._quit_pending or self._closed:
                break
            line = self._pending_lines.pop(0)
            if line is _LINE_TOO_LONG:
                self.respond("500 Command too long.")
            else:
                self.pre_process_command(line)

    def _start_idler(self):
        if self._idler is not None and not self._idler.cancelled:
            self._idler.cancel()
        if self.timeout:
            self._idler = self.ioloop.call_later(
                self.timeout, self.handle_timeout, _errback=self.handle_error
            )

    def _suspend_idler(self):
        if self._idler is not None and not self._idler.cancelled:
            self._idler.cancel()
        self._idler = None

    def handle_timeout(self):
        """Called when client does not send any command within the time
        specified in <timeout> attribute.
        """
        self.log("Control connection timed out.")
        self.close()

    # --- utility

    def push(self, s):
        assert isinstance(s, bytes), s
        AsyncChat.push(self, s)

    def respond(self, resp, logfun=logger.debug):
        """Send a response to the client using the command channel."""
        if self._closed:
            return
        self.push((resp + "\r\n").encode(self.encoding, self.unicode_errors))
        self.logline(f"-> {resp}", logfun=logfun)

    def log(self, msg, logfun=logger.info):
        """Log a message, including additional identifying session data."""
        prefix = self.log_prefix % self.__dict__
        logfun(f"{prefix} {msg}")

    def logline(self, msg, logfun=logger.debug):
        """Log a line including additional identifying session data.
        By default this is disabled unless logging level == DEBUG.
        """
        prefix = self.log_prefix % self.__dict__
        logfun(f"{prefix} {msg}")

    def log_exception(self, instance):
        """Log an unhandled exception. 'instance' is the instance
        where the exception was generated.
        """
        logger.exception(f"unhandled exception in instance {instance!r}")

    # --- connection

    def ftp_PORT(self, line):
        """Start an active data channel by using IPv4."""
        addr = [x.strip() for x in line.split(",")]
        # ASCII decimal tokens only
        if len(addr) != 6 or not all(
            x.isascii() and x.isdigit() for x in addr
        ):
            self.respond("501 Invalid PORT format.")
            return
        addr = [int(x) for x in addr]
        if any(x > 255 for x in addr[:4]):
            self.respond("501 Invalid PORT format.")
            return
        ip = ".".join(str(x) for x in addr[:4])
        port = (addr[4] * 256) + addr[5]
        # RFC-2577 recommends rejecting connections to privileged
        # ports (< 1024) for security reasons.
        if not 1024 <= port <= 65535:
            self.respond(f"501 Invalid port number: {port}.")
            return
        self.data_address = (ip, port)
        self.respond("200 PORT command successful.")

    def ftp_QUIT(self, line):
        """Quit the current session disconnecting the client."""
        if self.authenticated:
            msg_quit = self.authorizer.get_msg_quit(self.username)
        else:
            msg_quit = "Goodbye."
        self.respond(f"221 {msg_quit}")
        self._quit_pending = True
        self._pending_lines = []
        self.close_when_done()

    def ftp_EXIT(self, line):
        """Synonym for QUIT."""
        self.ftp_QUIT(line)

    # --- data transferring

    def ftp_LIST(self, line):
        """Return a list of the files in the current working directory
        through the data channel. Any argument is ignored.
        """
        if self.data_address is None:
            self.respond("425 Use PORT first.")
            return
        try:
            basedir = self.sandbox.resolve(self.cwd, "")
            if not self.sandbox.isdir(basedir):
                raise FilesystemError(f"No such directory: {self.cwd}")
            listing = self.sandbox.listdir(basedir)
        except (OSError, FilesystemError) as err:
            self.respond(f"550 {strerror(err)}.")
            return

        # the address is good for one transfer attempt only
        ip, port = self.data_address
        self.data_address = None
        self._out_dtp_queue = (basedir, listing)
        self.respond("150 Here comes the directory listing.")
        self._busy = True
        self._suspend_idler()
        self.active_dtp(ip, port, self)

    # --- authentication

    def ftp_USER(self, line):
        """Set the username for the current session. Re-issuing it
        drops any login already performed.
        """
        if self.authenticated:
            self.log(f"USER {self.username!r} logged out.")
        self.authenticated = False
        self.username = ""
        self._pending_user = line
        if self.authorizer.has_user(line):
            self.respond("331 Username ok, send password.")
        else:
            self.respond("530 Invalid user name.")
            self.on_login_failed(line)

    def ftp_PASS(self, line):
        """Check username's password against the authorizer."""
        if self._pending_user is None:
            self.respond("503 Login with USER first.")
            return
        username, self._pending_user = self._pending_user, None
        if self.authorizer.validate_authentication(username, line):
            self.authenticated = True
            self.username = username
            msg_login = self.authorizer.get_msg_login(username)
            self.respond(f"230 {msg_login}")
            self.on_login(username)
        else:
            self.respond("530 Authentication failed.")
            self.on_login_failed(username)

    # --- filesystem operations

    def ftp_PWD(self, line):
        """Return the name of the current working directory to the client."""
        # The 257 response is supposed to include the directory
        # name and in case it contains embedded double-quotes
        # they must be doubled (see RFC-959, chapter 7, appendix 2).
        cwd = self.cwd.replace('"', '""')
        self.respond(f'257 "{cwd}" is the current directory.')

    def ftp_CWD(self, path):
        """Change the current working directory."""
        try:
            real = self.sandbox.resolve(self.cwd, path)
            if not self.sandbox.isdir(real):
                raise FilesystemError(f"No such directory: {path}")
            ftppath = self.sandbox.fs2ftp(real)
        except FilesystemError as err:
            self.respond(f"550 {err}.")
            return
        self.cwd = ftppath
        self.respond(f'250 "{ftppath}" is the current directory.')

    # --- miscellaneous

    def ftp_HELP(self, line):
        """Return help text to the client."""
        if line:
            line = line.upper()
            if line in self.proto_cmds:
                self.respond(f"214 {self.proto_cmds[line]['help']}")
            else:
                self.respond("501 Unrecognized command.")
        else:
            # provide a compact list of recognized commands
            def formatted_help():
                cmds = []
                keys = sorted(self.proto_cmds.keys())
                while keys:
                    elems = tuple(keys[0:8])
                    cmds.append(" %-6s" * len(elems) % elems + "\r\n")
                    del keys[0:8]
                return "".join(cmds)

            self.respond(
                "214-The following commands are recognized:\r\n"
                + formatted_help()
                + "214 Help command successful."
            )
