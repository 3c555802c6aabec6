# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

import threading

import pytest

from tinyftpd.authorizers import DummyAuthorizer
from tinyftpd.exceptions import AuthorizerError

from . import TinyftpdTestCase


class TestDummyAuthorizer(TinyftpdTestCase):
    """Tests for DummyAuthorizer class."""

    def setUp(self):
        super().setUp()
        self.auth = DummyAuthorizer()
        self.auth.add_user("alice", "123456")
        self.auth.add_user("bob", "abcdef", msg_login="hi bob",
                           msg_quit="bye bob")

    def test_has_user(self):
        assert self.auth.has_user("alice")
        assert self.auth.has_user("bob")
        assert not self.auth.has_user("carol")
        # exact match
        assert not self.auth.has_user("Alice")
        assert not self.auth.has_user("alice ")
        assert not self.auth.has_user("")

    def test_validate_authentication(self):
        assert self.auth.validate_authentication("alice", "123456")
        assert self.auth.validate_authentication("bob", "abcdef")
        assert not self.auth.validate_authentication("alice", "abcdef")
        assert not self.auth.validate_authentication("alice", "")
        assert not self.auth.validate_authentication("alice", "1234567")
        assert not self.auth.validate_authentication("carol", "123456")

    def test_validate_unknown_user_w_dummy_password(self):
        # the dummy secret compared against for unknown users must
        # never authenticate anybody
        dummy = DummyAuthorizer._dummy_password
        assert not self.auth.validate_authentication("carol", dummy)

    def test_add_user_errors(self):
        with pytest.raises(AuthorizerError, match="already exists"):
            self.auth.add_user("alice", "x")
        with pytest.raises(AuthorizerError, match="invalid username"):
            self.auth.add_user("", "x")
        with pytest.raises(AuthorizerError, match="invalid username"):
            self.auth.add_user(" carol", "x")

    def test_remove_user(self):
        self.auth.remove_user("alice")
        assert not self.auth.has_user("alice")
        assert not self.auth.validate_authentication("alice", "123456")
        with pytest.raises(KeyError):
            self.auth.remove_user("alice")

    def test_messages(self):
        assert self.auth.get_msg_login("alice") == "Login successful."
        assert self.auth.get_msg_quit("alice") == "Goodbye."
        assert self.auth.get_msg_login("bob") == "hi bob"
        assert self.auth.get_msg_quit("bob") == "bye bob"
        assert self.auth.get_msg_login("carol") == "Login successful."

    def test_concurrent_lookups(self):
        errors = []

        def worker():
            try:
                for _ in range(200):
                    assert self.auth.has_user("alice")
                    assert self.auth.validate_authentication("bob", "abcdef")
                    assert not self.auth.validate_authentication("bob", "x")
            except AssertionError as err:
                errors.append(err)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert not errors
