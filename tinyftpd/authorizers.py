# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""An "authorizer" is a class handling authentications.
It is used by tinyftpd.handlers.FTPHandler class for:

- verifying that a user name exists (has_user())
- verifying user password (validate_authentication())

DummyAuthorizer is the base authorizer, providing a platform
independent interface for managing "virtual" FTP users.
"""

import hmac
import threading

from .exceptions import AuthorizerError

__all__ = ["DummyAuthorizer"]


class DummyAuthorizer:
    """Basic "dummy" authorizer class, suitable for subclassing to
    create your own custom authorizers.

    An "authorizer" is a class handling authentications. Users are
    kept in memory; the table is meant to be populated before the
    server starts and only read afterwards. Lookups take no lock,
    only add_user() and remove_user() do.
    """

    # compared against when the user does not exist so that "unknown
    # user" and "wrong password" take a comparable amount of time
    _dummy_password = "\x00" * 16

    def __init__(self):
        self.user_table = {}
        self._lock = threading.Lock()

    def add_user(self, username, password, msg_login="Login successful.",
                 msg_quit="Goodbye."):
        """Add a user to the virtual users table.

        AuthorizerError exception is raised on error conditions such as
        an empty username or a duplicate entry.

         - (str) username: the user name; lookups are case sensitive.
         - (str) password: the password, compared as-is.
         - (str) msg_login: the string sent when client logs in.
         - (str) msg_quit: the string sent when client quits.
        """
        if not username or username != username.strip():
            raise AuthorizerError(f"invalid username {username!r}")
        with self._lock:
            if username in self.user_table:
                raise AuthorizerError(f"user {username!r} already exists")
            self.user_table[username] = dict(
                pwd=str(password),
                msg_login=str(msg_login),
                msg_quit=str(msg_quit),
            )

    def remove_user(self, username):
        """Remove a user from the virtual users table."""
        with self._lock:
            del self.user_table[username]

    def has_user(self, username):
        """Whether the username exists in the virtual users table."""
        return username in self.user_table

    def validate_authentication(self, username, password):
        """Return True if the supplied username and password match
        the stored credentials, else False.
        """
        user = self.user_table.get(username)
        stored = self._dummy_password if user is None else user["pwd"]
        matches = hmac.compare_digest(
            stored.encode("utf8"), str(password).encode("utf8")
        )
        return matches and user is not None

    def get_msg_login(self, username):
        """Return the user's login message."""
        try:
            return self.user_table[username]["msg_login"]
        except KeyError:
            return "Login successful."

    def get_msg_quit(self, username):
        """Return the user's quitting message."""
        try:
            return self.user_table[username]["msg_quit"]
        except KeyError:
            return "Goodbye."
