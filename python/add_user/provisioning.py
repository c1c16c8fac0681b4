"""add_user.provisioning

Provision a new Unix account: create the user, set or lock its password, add
it to the organizational group (and optionally the sudo group) and install an
SSH public key into ~/.ssh/authorized_keys.

All input checks, including reading the SSH key, happen before the first
change to the host. After that, steps run in order and stop at the first
failure. Nothing is rolled back, so a failure after account creation leaves a
partially provisioned user behind; remove it with `userdel -r <username>` and
run again.
"""
import base64
import logging
import os
import re
import secrets
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Protocol

from add_user.errors import PreconditionError, ProvisioningError, UsageError
from add_user.identity import IdentityManager

USERNAME_PATTERN = re.compile(r"[a-z][-a-z0-9_]*")

logger = logging.getLogger("add-user")


class StatusOutput(Protocol):
    def info(self, message: str) -> None: ...

    def warning(self, message: str) -> None: ...


# ------------- Settings -------------

@dataclass
class Settings:
    org_group: str = "rensselaer"
    sudo_group: str = "sudo"
    shell: str = "/bin/bash"
    password_bytes: int = 16
    color: bool = True
    log_file: str = "/var/log/add-user.log"

    @classmethod
    def from_mapping(cls, raw: Optional[Dict[str, Any]]) -> "Settings":
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise ValueError("Config root must be a mapping")
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in raw.items():
            if key not in known:
                raise ValueError(f"Unknown config key: {key}")
            expected = type(getattr(cls(), key))
            # bool is a subclass of int; don't accept it for password_bytes
            if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
                raise ValueError(f"{key} must be {expected.__name__}")
            values[key] = value
        settings = cls(**values)
        if settings.password_bytes < 8:
            raise ValueError("password_bytes must be at least 8")
        for key in ("org_group", "sudo_group", "shell", "log_file"):
            if not getattr(settings, key):
                raise ValueError(f"{key} must be a non-empty string")
        return settings


# ------------- Request -------------

def validate_username(username: str) -> str:
    # fullmatch: `$` would let a trailing newline through
    if not USERNAME_PATTERN.fullmatch(username or ""):
        raise UsageError(
            f"Invalid username format: {username!r} "
            "(must start with a lowercase letter followed by lowercase letters, digits, '-' or '_')"
        )
    return username


@dataclass(frozen=True)
class ProvisioningRequest:
    username: str
    grant_sudo: bool = False
    ssh_key: Optional[str] = None
    password: Optional[str] = None
    generate_password: bool = True
    force_password_change: bool = False
    disable_password: bool = False

    def validate(self) -> "ProvisioningRequest":
        validate_username(self.username)
        if self.ssh_key is not None and not self.ssh_key.strip():
            raise UsageError("--ssh-key requires a key string or a file path")
        if self.disable_password and self.password is not None:
            raise UsageError("--password and --no-password cannot be used together")
        if self.disable_password and self.force_password_change:
            raise UsageError("--force-password-change and --no-password cannot be used together")
        return self


@dataclass
class ProvisioningResult:
    username: str
    groups: List[str] = field(default_factory=list)
    sudo: bool = False
    ssh_key_installed: bool = False
    ssh_key_added: bool = False
    password_disabled: bool = False
    password: Optional[str] = None
    password_generated: bool = False
    password_expired: bool = False


# ------------- Passwords -------------

def generate_password(num_bytes: int = 16) -> str:
    # same shape as `openssl rand -base64 16`
    return base64.b64encode(secrets.token_bytes(num_bytes)).decode("ascii")


# ------------- SSH keys -------------

def resolve_ssh_key(value: str) -> str:
    """Return key material: the file's contents if `value` is a readable file, else `value`.

    Raises UsageError when the file can't be decoded or the key is empty.
    """
    if os.path.isfile(value) and os.access(value, os.R_OK):
        try:
            with open(value, "r", encoding="utf-8") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as exc:
            raise UsageError(f"Cannot read SSH key file {value}: {exc}") from exc
        logger.info("Read SSH key from file: %s", value)
    else:
        content = value
    content = content.rstrip()
    if not content.strip():
        raise UsageError(f"SSH key is empty: {value}")
    return content


def append_authorized_keys(authorized_keys: str, key_material: str) -> int:
    """Append each key line not already present verbatim. Returns the number of lines added."""
    try:
        with open(authorized_keys, "r", encoding="utf-8") as f:
            existing = {line.rstrip("\n") for line in f}
    except FileNotFoundError:
        existing = set()

    added = 0
    with open(authorized_keys, "a", encoding="utf-8") as f:
        for line in key_material.splitlines():
            if not line.strip() or line in existing:
                continue
            f.write(line + "\n")
            existing.add(line)
            added += 1
    return added


def install_ssh_key(identity: IdentityManager, username: str, key_material: str, out: StatusOutput) -> bool:
    """Install already resolved key material for `username`. Returns True if anything was appended."""
    ssh_dir = os.path.join(identity.home_dir(username), ".ssh")
    authorized_keys = os.path.join(ssh_dir, "authorized_keys")
    try:
        os.makedirs(ssh_dir, exist_ok=True)
        added = append_authorized_keys(authorized_keys, key_material)
    except (OSError, UnicodeDecodeError) as exc:
        raise ProvisioningError(f"Writing {authorized_keys} failed: {exc}") from exc

    if added:
        out.info("SSH key added")
        logger.info("Added %d key line(s) to %s", added, authorized_keys)
    else:
        out.warning("SSH key already exists")
        logger.info("SSH key already present in %s", authorized_keys)

    identity.set_owner(ssh_dir, username)
    try:
        os.chmod(ssh_dir, 0o700)
        os.chmod(authorized_keys, 0o600)
    except OSError as exc:
        raise ProvisioningError(f"Setting permissions on {ssh_dir} failed: {exc}") from exc
    return added > 0


# ------------- Workflow -------------

def check_preconditions(request: ProvisioningRequest, identity: IdentityManager, is_root: bool) -> Optional[str]:
    """Validate everything before touching the host. Returns the resolved SSH key material, if any."""
    if not is_root:
        raise PreconditionError("Run as root (sudo)")
    request.validate()
    key_material = resolve_ssh_key(request.ssh_key) if request.ssh_key is not None else None
    if identity.user_exists(request.username):
        raise PreconditionError(f"User already exists: {request.username}")
    return key_material


def provision(
    request: ProvisioningRequest,
    identity: IdentityManager,
    settings: Settings,
    out: StatusOutput,
    is_root: bool,
) -> ProvisioningResult:
    key_material = check_preconditions(request, identity, is_root)
    username = request.username
    result = ProvisioningResult(username=username)

    out.info(f"Creating user '{username}'...")
    identity.create_user(username, settings.shell)
    logger.info("Created user: %s", username)

    try:
        _apply(request, key_material, identity, settings, out, result)
    except ProvisioningError:
        logger.error("Provisioning of %s stopped part way; clean up with: userdel -r %s", username, username)
        raise

    result.groups = identity.groups_of(username)
    return result


def _apply(
    request: ProvisioningRequest,
    key_material: Optional[str],
    identity: IdentityManager,
    settings: Settings,
    out: StatusOutput,
    result: ProvisioningResult,
) -> None:
    username = request.username

    if request.disable_password:
        identity.lock_password(username)
        result.password_disabled = True
        out.warning("Password login disabled")
        logger.info("Password login disabled for %s", username)
    else:
        password = request.password
        if password is None and request.generate_password:
            password = generate_password(settings.password_bytes)
            result.password_generated = True
            out.info("Generated random password")
        if password is not None:
            identity.set_password(username, password)
            result.password = password
            logger.info("Password set for user: %s", username)
            if request.force_password_change:
                identity.expire_password(username)
                result.password_expired = True
                out.info("User must change password on first login")
                logger.info("Password expired for %s", username)
        elif request.force_password_change:
            out.warning("No password set; --force-password-change ignored")

    if not identity.group_exists(settings.org_group):
        identity.create_group(settings.org_group)
        logger.info("Created group: %s", settings.org_group)
    identity.add_to_group(username, settings.org_group)
    logger.info("Added %s to group %s", username, settings.org_group)

    if request.grant_sudo:
        identity.add_to_group(username, settings.sudo_group)
        result.sudo = True
        logger.info("Granted sudo to %s via group %s", username, settings.sudo_group)

    if key_material is not None:
        result.ssh_key_added = install_ssh_key(identity, username, key_material, out)
        result.ssh_key_installed = True


def format_summary(result: ProvisioningResult) -> str:
    lines = [
        "-" * 40,
        f"Username: {result.username}",
        f"Groups: {' '.join(result.groups)}",
        f"Sudo: {'true' if result.sudo else 'false'}",
        f"SSH key: {'YES' if result.ssh_key_installed else 'NO'}",
        f"Password disabled: {'true' if result.password_disabled else 'false'}",
    ]
    if not result.password_disabled:
        lines.append(f"Password: {result.password if result.password is not None else '(not set)'}")
    lines.append("-" * 40)
    return "\n".join(lines)
