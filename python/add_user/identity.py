"""add_user.identity

Identity management backends used by add-user.

`IdentityManager` is the small interface the provisioning workflow talks to;
`ShellIdentityManager` implements it with the shadow-utils commands found on
Debian/Ubuntu hosts (useradd, chpasswd, passwd, chage, groupadd, usermod).
"""
import logging
import pwd
import shlex
import subprocess
from typing import List, Optional, Tuple

from add_user.errors import CommandError, ProvisioningError

logger = logging.getLogger("add-user")


class IdentityManager:
    """Operations on the host's user and group databases."""

    def user_exists(self, username: str) -> bool:
        raise NotImplementedError

    def group_exists(self, group: str) -> bool:
        raise NotImplementedError

    def create_user(self, username: str, shell: str) -> None:
        raise NotImplementedError

    def set_password(self, username: str, password: str) -> None:
        raise NotImplementedError

    def lock_password(self, username: str) -> None:
        raise NotImplementedError

    def expire_password(self, username: str) -> None:
        raise NotImplementedError

    def create_group(self, group: str) -> None:
        raise NotImplementedError

    def add_to_group(self, username: str, group: str) -> None:
        raise NotImplementedError

    def groups_of(self, username: str) -> List[str]:
        raise NotImplementedError

    def home_dir(self, username: str) -> str:
        raise NotImplementedError

    def set_owner(self, path: str, username: str) -> None:
        raise NotImplementedError


def run(cmd: List[str], input: Optional[str] = None) -> Tuple[int, str, str]:
    logger.debug("RUN: %s", shlex.join(cmd))
    proc = subprocess.run(cmd, input=input, capture_output=True, text=True)
    if proc.returncode != 0:
        logger.debug("RET[%s] ERR: %s", proc.returncode, (proc.stderr or "").strip())
    else:
        logger.debug("RET[%s] OUT: %s", proc.returncode, (proc.stdout or "").strip())
    return proc.returncode, (proc.stdout or "").strip(), (proc.stderr or "").strip()


class ShellIdentityManager(IdentityManager):

    def _check(self, cmd: List[str], what: str, input: Optional[str] = None) -> str:
        code, out, err = run(cmd, input=input)
        if code != 0:
            logger.error("%s failed: %s", what, err)
            raise CommandError(what, cmd, code, err)
        return out

    def user_exists(self, username: str) -> bool:
        code, out, _ = run(["getent", "passwd", username])
        return code == 0 and bool(out)

    def group_exists(self, group: str) -> bool:
        code, out, _ = run(["getent", "group", group])
        return code == 0 and bool(out)

    def create_user(self, username: str, shell: str) -> None:
        self._check(["useradd", "-m", "-s", shell, username], f"Creating user '{username}'")

    def set_password(self, username: str, password: str) -> None:
        # chpasswd reads name:password from stdin; keep the secret off argv and out of the log
        self._check(["chpasswd"], f"Setting password for '{username}'", input=f"{username}:{password}\n")

    def lock_password(self, username: str) -> None:
        self._check(["passwd", "-l", username], f"Locking password for '{username}'")

    def expire_password(self, username: str) -> None:
        self._check(["chage", "-d", "0", username], f"Expiring password for '{username}'")

    def create_group(self, group: str) -> None:
        self._check(["groupadd", group], f"Creating group '{group}'")

    def add_to_group(self, username: str, group: str) -> None:
        self._check(["usermod", "-a", "-G", group, username], f"Adding '{username}' to group '{group}'")

    def groups_of(self, username: str) -> List[str]:
        out = self._check(["id", "-nG", username], f"Listing groups of '{username}'")
        return out.split()

    def home_dir(self, username: str) -> str:
        try:
            return pwd.getpwnam(username).pw_dir
        except KeyError:
            raise ProvisioningError(f"No passwd entry for '{username}'") from None

    def set_owner(self, path: str, username: str) -> None:
        # "user:" means the user's login group
        self._check(["chown", "-R", f"{username}:", path], f"Changing owner of {path}")
