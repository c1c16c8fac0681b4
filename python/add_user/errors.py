from typing import List


class ProvisioningError(Exception):
    """Any failure that aborts provisioning."""


class UsageError(ProvisioningError):
    pass


class PreconditionError(ProvisioningError):
    pass


class CommandError(ProvisioningError):
    def __init__(self, what: str, cmd: List[str], returncode: int, stderr: str):
        self.what = what
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr or f"exit status {returncode}"
        super().__init__(f"{what} failed: {detail}")
