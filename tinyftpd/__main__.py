# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""
Start a standalone FTP server from the command line:

$ python3 -m tinyftpd -d /srv/ftp -u alice:123456
"""

import argparse
import codecs
import logging
import os

from . import servers
from .authorizers import DummyAuthorizer
from .data import ActiveDTP
from .filesystems import PathSandbox
from .handlers import FTPHandler
from .log import config_logging
from .utils import hilite
from .utils import term_supports_colors

DEFAULT_PORT = 2121
DEFAULT_USERS = ["alice:123456", "bob:abcdef"]


class ColorHelpFormatter(argparse.HelpFormatter):
    def start_section(self, heading):  # titles / groups
        heading = f"{hilite(heading.capitalize(), 'orange')}"
        super().start_section(heading)

    def _format_action_invocation(self, action):
        # colorize the flag part (e.g. "-i, --interface")
        if not action.option_strings:
            default = self._metavar_formatter(action, action.dest)(1)[0]
            return f"{hilite(default, 'white')}"

        parts = []
        for option in action.option_strings:
            parts.append(f"{hilite(option, 'lightblue')}")

        if action.nargs != 0:
            metavar = self._format_args(
                action, self._get_default_metavar_for_optional(action)
            )
            parts[-1] += " " + f"{hilite(metavar, 'green')}"

        return ", ".join(parts)


def parse_encoding(value):
    try:
        codecs.lookup(value)
    except LookupError:
        raise argparse.ArgumentTypeError(
            f"unknown encoding: {value!r}"
        ) from None
    return value


def parse_concurrency(value):
    mapping = {
        "async": servers.FTPServer,
        "multi-thread": servers.ThreadedFTPServer,
    }
    if value not in mapping:
        raise argparse.ArgumentTypeError(
            f"invalid concurrency {value!r}; choose between: "
            f"{', '.join([repr(x) for x in mapping])}"
        )
    return mapping[value]


def parse_user(value):
    username, sep, password = value.partition(":")
    if not sep or not username or username != username.strip():
        raise argparse.ArgumentTypeError(
            f"invalid user {value!r} (expected NAME:PASSWORD)"
        )
    return (username, password)


def parse_directory(value):
    if not os.path.isdir(value):
        raise argparse.ArgumentTypeError(f"no such directory: {value!r}")
    return value


def parse_positive_int(value):
    try:
        value = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid int value: {value!r}"
        ) from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0 (got {value})")
    return value


def parse_args(args=None):
    usage = "python3 -m tinyftpd [options]"
    parser = argparse.ArgumentParser(
        usage=usage,
        description=main.__doc__,
        formatter_class=(
            ColorHelpFormatter
            if term_supports_colors()
            else argparse.HelpFormatter
        ),
    )

    # --- most important opts

    group_main = parser.add_argument_group("Main options")
    group_main.add_argument(
        "-i",
        "--interface",
        default=None,
        metavar="ADDRESS",
        help="specify the interface to run on (default: all interfaces)",
    )
    group_main.add_argument(
        "-p",
        "--port",
        type=int,
        default=DEFAULT_PORT,
        metavar="PORT",
        help=f"specify port number to run on (default: {DEFAULT_PORT})",
    )
    group_main.add_argument(
        "-d",
        "--directory",
        type=parse_directory,
        default=os.getcwd(),
        metavar="PATH",
        help="specify the directory to share (default: current directory)",
    )
    group_main.add_argument(
        "-u",
        "--user",
        type=parse_user,
        action="append",
        default=None,
        metavar="NAME:PASSWORD",
        help=(
            "add a user allowed to log in; can be repeated (default:"
            f" {', '.join(DEFAULT_USERS)})"
        ),
    )
    group_main.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="enable DEBUG logging level",
    )
    group_main.add_argument(
        "--concurrency",
        type=parse_concurrency,
        default="async",
        help=(
            "the FTP server concurrency model to use, either 'async'"
            " (default) or 'multi-thread'"
        ),
    )

    # --- less important opts

    group_misc = parser.add_argument_group("Other options")
    group_misc.add_argument(
        "--timeout",
        type=parse_positive_int,
        default=FTPHandler.timeout,
        help=(
            "control connection idle timeout (default:"
            f" {FTPHandler.timeout} seconds)"
        ),
    )
    group_misc.add_argument(
        "--data-timeout",
        type=parse_positive_int,
        default=ActiveDTP.timeout,
        help=(
            "data connection connect and stall timeout (default:"
            f" {ActiveDTP.timeout} seconds)"
        ),
    )
    group_misc.add_argument(
        "--banner",
        type=str,
        default=FTPHandler.banner,
        help=(
            "the message sent when client connects (default:"
            f" {FTPHandler.banner!r})"
        ),
    )
    group_misc.add_argument(
        "--encoding",
        type=parse_encoding,
        default="utf-8",
        help=(
            "the encoding used for client / server communication (default:"
            f" {FTPHandler.encoding})"
        ),
    )
    group_misc.add_argument(
        "--max-cons",
        type=parse_positive_int,
        default=servers.FTPServer.max_cons,
        help=(
            "max number of simultaneous connections, async model only"
            f" (default: {servers.FTPServer.max_cons})"
        ),
    )
    group_misc.add_argument(
        "--max-workers",
        type=parse_positive_int,
        default=servers.ThreadedFTPServer.max_workers,
        help=(
            "size of the worker pool, multi-thread model only (default:"
            f" {servers.ThreadedFTPServer.max_workers})"
        ),
    )

    opts = parser.parse_args(args)
    if opts.max_workers < 1:
        parser.error("--max-workers must be >= 1")
    if opts.user:
        names = [x[0] for x in opts.user]
        dups = sorted({x for x in names if names.count(x) > 1})
        if dups:
            parser.error(f"user(s) specified more than once: {dups}")
    return opts


def main(args=None):
    """Start a standalone FTP server serving a directory in read-only,
    active mode.
    """
    opts = parse_args(args=args)

    if opts.debug:
        config_logging(level=logging.DEBUG)

    # On recent Windows versions, if address is not specified and IPv6
    # is installed the socket will listen on IPv6 by default; in this
    # case we force IPv4 instead.
    if os.name in ("nt", "ce") and not opts.interface:
        opts.interface = "0.0.0.0"

    users = opts.user
    if users is None:
        users = [parse_user(x) for x in DEFAULT_USERS]
    authorizer = DummyAuthorizer()
    for username, password in users:
        authorizer.add_user(username, password)

    # Configure handler.
    handler = FTPHandler
    handler.authorizer = authorizer
    handler.sandbox = PathSandbox(opts.directory)
    handler.timeout = opts.timeout
    handler.active_dtp.timeout = opts.data_timeout
    handler.dtp_handler.timeout = opts.data_timeout
    handler.banner = opts.banner
    handler.encoding = opts.encoding

    # Configure server / acceptor.
    server_class = opts.concurrency
    server = server_class((opts.interface, opts.port), handler)
    server.max_cons = opts.max_cons
    if isinstance(server, servers.ThreadedFTPServer):
        server.max_workers = opts.max_workers

    # On Windows specify a timeout for the underlying select() so
    # that the server can be interrupted with CTRL + C.
    timeout = 2 if os.name == "nt" else None

    try:
        server.serve_forever(timeout=timeout)
    finally:
        server.close_all()

    if args:  # only used in unit tests
        return server


if __name__ == "__main__":
    main()
