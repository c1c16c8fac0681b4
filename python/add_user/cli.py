"""add_user.cli

Create a Unix account with password, group, sudo and SSH key setup.

Commands:
  add-user        advanced variant: --ssh-key optional, --no-password available,
                  a random password is generated when --password is omitted
  add-user-basic  simple variant: --ssh-key required, password only set when given

Configuration (YAML, first found wins):
  --config <path>  >  $ADD_USER_CONFIG  >  /etc/add-user.yaml

  org_group: rensselaer      # group every new account joins
  sudo_group: sudo
  shell: /bin/bash
  password_bytes: 16
  color: true
  log_file: /var/log/add-user.log

Examples:
  sudo add-user alice --ssh-key /tmp/alice.pub --password hunter2 --sudo --force-password-change
  sudo add-user bob --ssh-key "ssh-ed25519 AAAA... bob@laptop" --no-password
  sudo add-user-basic carol --ssh-key ~/carol.pub
  sudo add-user dave --password=-Xy9q      # values starting with "-" need the = form

Exit Codes:
  0 success (or --help)
  1 usage error, missing privilege, existing user, failed system command
"""
import argparse
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import List, Optional

import yaml
from colorama import Fore, Style

from add_user.errors import ProvisioningError
from add_user.identity import IdentityManager, ShellIdentityManager
from add_user.provisioning import (
    ProvisioningRequest,
    Settings,
    format_summary,
    provision,
)

DEFAULT_CONFIG_PATH = "/etc/add-user.yaml"
ENV_CONFIG_KEY = "ADD_USER_CONFIG"
LOG_MAX_BYTES = 1_000_000
LOG_BACKUP_COUNT = 3

logger = logging.getLogger("add-user")


class Reporter:
    """Tagged status lines; errors go to stderr."""

    def __init__(self, color: bool = True):
        self.color = color

    def _emit(self, tag: str, colour: str, message: str, stream) -> None:
        if self.color:
            print(f"{colour}[{tag}]{Style.RESET_ALL} {message}", file=stream)
        else:
            print(f"[{tag}] {message}", file=stream)

    def info(self, message: str) -> None:
        self._emit("INFO", Fore.GREEN, message, sys.stdout)

    def warning(self, message: str) -> None:
        self._emit("WARNING", Fore.YELLOW + Style.BRIGHT, message, sys.stdout)

    def error(self, message: str) -> None:
        self._emit("ERROR", Fore.RED, message, sys.stderr)


class _ArgumentParser(argparse.ArgumentParser):
    # argparse exits 2 on bad arguments; this tool reports every usage error with 1
    def error(self, message):
        self.print_usage(sys.stderr)
        Reporter(color=sys.stderr.isatty()).error(message)
        self.exit(1)


def build_parser(basic: bool = False) -> argparse.ArgumentParser:
    prog = "add-user-basic" if basic else "add-user"
    # no prefix matching: "--sud" must not turn into --sudo
    parser = _ArgumentParser(
        prog=prog,
        description="Create a user account with password, group, sudo and SSH key setup",
        epilog="Option values starting with '-' must be attached with '=', e.g. --password=-Xy9q",
        allow_abbrev=False,
    )
    parser.add_argument("username", help="Username to create")
    parser.add_argument("--sudo", action="store_true", help="Grant sudo access")
    parser.add_argument(
        "--ssh-key",
        metavar="KEY|FILE",
        required=basic,
        help="SSH public key string or file (use --ssh-key=VALUE if it starts with '-')",
    )
    parser.add_argument("--password", help="Set specific password (use --password=VALUE if it starts with '-')")
    parser.add_argument("--force-password-change", action="store_true", help="Force password change on first login")
    if not basic:
        parser.add_argument("--no-password", action="store_true", help="Disable password authentication")
    parser.add_argument("--config", dest="config_path", help=f"YAML settings file (default ${ENV_CONFIG_KEY} or {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--no-color", action="store_true", help="Plain output without colors")
    parser.add_argument("--log-file", help="Log file path (overrides config)")
    parser.add_argument("--verbose", action="store_true", help="Verbose logging")
    return parser


def resolve_config_path(cli_path: Optional[str]) -> Optional[str]:
    if cli_path:
        # an explicit path must exist
        return cli_path
    env_path = os.environ.get(ENV_CONFIG_KEY)
    if env_path:
        return env_path
    if os.path.exists(DEFAULT_CONFIG_PATH):
        return DEFAULT_CONFIG_PATH
    return None


def load_settings(path: Optional[str]) -> Settings:
    if path is None:
        return Settings()
    if not os.path.exists(path):
        raise ValueError(f"Config file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValueError(f"Cannot parse {path}: {exc}") from exc
    return Settings.from_mapping(raw)


def setup_logging(verbose: bool, log_path: str) -> None:
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    try:
        log_dir = os.path.dirname(log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        fh = RotatingFileHandler(log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT)
    except OSError as exc:
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.WARNING)
        logger.addHandler(sh)
        logger.warning("Cannot open log file '%s': %s. Falling back to stderr logging.", log_path, exc)
        return
    fh.setFormatter(fmt)
    logger.addHandler(fh)


def request_from_args(args: argparse.Namespace, basic: bool) -> ProvisioningRequest:
    return ProvisioningRequest(
        username=args.username,
        grant_sudo=args.sudo,
        ssh_key=args.ssh_key,
        password=args.password,
        generate_password=not basic,
        force_password_change=args.force_password_change,
        disable_password=getattr(args, "no_password", False),
    )


def run_cli(argv: Optional[List[str]] = None, basic: bool = False, identity: Optional[IdentityManager] = None) -> int:
    args = build_parser(basic).parse_args(argv)
    out = Reporter(color=not args.no_color)

    try:
        settings = load_settings(resolve_config_path(args.config_path))
    except ValueError as exc:
        out.error(f"Invalid configuration: {exc}")
        return 1
    if args.no_color or not settings.color:
        out.color = False
    setup_logging(args.verbose, args.log_file or settings.log_file)

    request = request_from_args(args, basic)
    if identity is None:
        identity = ShellIdentityManager()
    try:
        result = provision(request, identity, settings, out, is_root=os.geteuid() == 0)
    except ProvisioningError as exc:
        out.error(str(exc))
        logger.error("add-user %s failed: %s", request.username, exc)
        return 1

    print()
    out.info("User setup complete")
    print(format_summary(result))
    logger.info("User setup complete: %s", request.username)
    return 0


def main() -> int:
    return run_cli(sys.argv[1:])


def main_basic() -> int:
    return run_cli(sys.argv[1:], basic=True)


if __name__ == "__main__":
    raise SystemExit(main())
