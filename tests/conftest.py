import os

import pytest

from add_user.errors import CommandError
from add_user.identity import IdentityManager


class FakeIdentity(IdentityManager):
    """In-memory user/group database; home directories live under a temp dir."""

    def __init__(self, home_base, groups=("sudo",)):
        self.home_base = str(home_base)
        self.users = {}
        self.groups = {g: [] for g in groups}
        self.owners = {}
        self.calls = []
        self.fail_on = None

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail_on == name:
            raise CommandError(name, [name], 1, "simulated failure")

    def user_exists(self, username):
        return username in self.users

    def group_exists(self, group):
        return group in self.groups

    def create_user(self, username, shell):
        self._call("create_user", username, shell)
        home = os.path.join(self.home_base, username)
        os.makedirs(home)
        self.users[username] = {
            "shell": shell,
            "home": home,
            "password": None,
            "locked": False,
            "expired": False,
        }

    def set_password(self, username, password):
        self._call("set_password", username)
        self.users[username]["password"] = password

    def lock_password(self, username):
        self._call("lock_password", username)
        self.users[username]["locked"] = True

    def expire_password(self, username):
        self._call("expire_password", username)
        self.users[username]["expired"] = True

    def create_group(self, group):
        self._call("create_group", group)
        self.groups[group] = []

    def add_to_group(self, username, group):
        self._call("add_to_group", username, group)
        if username not in self.groups[group]:
            self.groups[group].append(username)

    def groups_of(self, username):
        return [username] + [g for g, members in self.groups.items() if username in members]

    def home_dir(self, username):
        return self.users[username]["home"]

    def set_owner(self, path, username):
        self._call("set_owner", path, username)
        self.owners[path] = username


class RecordingReporter:

    def __init__(self):
        self.messages = []

    def info(self, message):
        self.messages.append(("info", message))

    def warning(self, message):
        self.messages.append(("warning", message))

    def error(self, message):
        self.messages.append(("error", message))


@pytest.fixture
def identity(tmp_path):
    home = tmp_path / "home"
    home.mkdir()
    return FakeIdentity(home)


@pytest.fixture
def reporter():
    return RecordingReporter()
