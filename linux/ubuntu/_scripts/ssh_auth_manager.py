#!/usr/bin/env python3
"""
SSH Authentication Manager
--------------------------

An interactive, Nord-themed terminal application for managing SSH authentication
on a single host. It provides a numbered menu to:

  [1] Create an SSH key pair (PEM) for a local user
  [2] Force the SSH daemon to use only key authentication
  [3] Revert the SSH daemon to allow password authentication
  [4] Test an SSH connection with a private key file
  [5] Exit

Every change to sshd_config is preceded by a timestamped backup, checked with
`sshd -t` and only then activated by restarting the SSH service.

Usage:
  Run the script as root:
      sudo ./ssh_auth_manager.py

Version: 1.0.0
"""

import glob
import logging
import os
import pwd
import re
import shlex
import shutil
import signal
import socket
import stat
import subprocess
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pyfiglet
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text
from rich.traceback import install as install_rich_traceback

console: Console = Console()
logger = logging.getLogger("ssh_auth_manager")


# ----------------------------------------------------------------
# Nord-Themed Colors
# ----------------------------------------------------------------
class NordColors:
    """
    Nord color palette for consistent UI styling.
    https://www.nordtheme.com/docs/colors-and-palettes
    """

    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"
    RED: str = "#BF616A"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"

    @classmethod
    def get_frost_gradient(cls, steps: int = 4) -> List[str]:
        frosts = [cls.FROST_1, cls.FROST_2, cls.FROST_3, cls.FROST_4]
        return frosts[:steps]


# ----------------------------------------------------------------
# Configuration & Constants
# ----------------------------------------------------------------
APP_NAME: str = "SSH Auth Manager"
APP_SUBTITLE: str = "Key Pairs, sshd_config and Connection Tests"
VERSION: str = "1.0.0"

BACKUP_SUFFIX: str = ".backup."
BACKUP_TIMESTAMP_FORMAT: str = "%Y%m%d%H%M%S"
REMOTE_TEST_COMMAND: str = 'echo "SSH connection successful!"'
SECURE_KEY_MODE_MASK: int = 0o600
EXIT_CHOICES: Tuple[str, ...] = ("5", "q", "quit", "exit")


@dataclass
class AuthManagerConfig:
    """
    Settings threaded through every operation of the manager.

    Attributes:
        sshd_config: Path of the SSH daemon configuration file.
        sshd_binary: Daemon binary used for `sshd -t` validation.
        service_name: Service restarted after a validated change.
        key_type: Algorithm passed to ssh-keygen.
        key_bits: Key size passed to ssh-keygen.
        key_format: Private key encoding passed to ssh-keygen.
        default_key_name: Key filename used when the prompt is left blank.
        default_ssh_port: Port offered by the connection tester.
        connect_timeout: ssh ConnectTimeout in seconds.
        command_timeout: Extra seconds allowed for the remote command.
        invalid_choice_delay: Pause after an invalid menu choice.
        log_file: Audit log destination.
    """

    sshd_config: Path = Path("/etc/ssh/sshd_config")
    sshd_binary: str = "sshd"
    service_name: str = "sshd"
    key_type: str = "rsa"
    key_bits: int = 4096
    key_format: str = "PEM"
    default_key_name: str = "id_rsa"
    default_ssh_port: int = 22
    connect_timeout: int = 10
    command_timeout: int = 30
    invalid_choice_delay: float = 2.0
    log_file: str = "/var/log/ssh_auth_manager.log"
    key_only_directives: Dict[str, str] = field(
        default_factory=lambda: {
            "PasswordAuthentication": "no",
            "PubkeyAuthentication": "yes",
            "ChallengeResponseAuthentication": "no",
            "UsePAM": "yes",
        }
    )
    password_directives: Dict[str, str] = field(
        default_factory=lambda: {
            "PasswordAuthentication": "yes",
            "PubkeyAuthentication": "yes",
            "ChallengeResponseAuthentication": "yes",
            "UsePAM": "yes",
        }
    )

    @classmethod
    def from_env(cls) -> "AuthManagerConfig":
        """Build a config, honouring SSH_AUTH_MANAGER_* overrides."""
        cfg = cls()
        if sshd_config := os.environ.get("SSH_AUTH_MANAGER_SSHD_CONFIG"):
            cfg.sshd_config = Path(sshd_config)
        if service := os.environ.get("SSH_AUTH_MANAGER_SERVICE"):
            cfg.service_name = service
        if log_file := os.environ.get("SSH_AUTH_MANAGER_LOG_FILE"):
            cfg.log_file = log_file
        return cfg


# ----------------------------------------------------------------
# Data Structures
# ----------------------------------------------------------------
@dataclass
class UserAccount:
    """A local account as reported by the OS user database."""

    name: str
    home: Path
    uid: int
    gid: int

    @property
    def ssh_dir(self) -> Path:
        return self.home / ".ssh"


@dataclass
class KeyPair:
    private_path: Path
    algorithm: str
    owner: str

    @property
    def public_path(self) -> Path:
        return self.private_path.with_name(self.private_path.name + ".pub")


@dataclass
class ConnectionTarget:
    host: str
    username: str
    key_file: Path
    port: int = 22

    @property
    def destination(self) -> str:
        return f"{self.username}@{self.host}"


class LineKind(Enum):
    COMMENT = "comment"
    DIRECTIVE = "directive"
    BLANK = "blank"


@dataclass
class ConfigLine:
    kind: LineKind
    raw: str
    key: Optional[str] = None
    value: Optional[str] = None


_DIRECTIVE_RE = re.compile(r"^\s*(?P<key>[^\s=#]+)(?:\s*=\s*|\s+)?(?P<value>.*)$")


class SshdConfig:
    """
    Ordered, lossless model of an sshd_config file.

    Each physical line becomes a ConfigLine record. Lines that are not touched
    by set() are rendered back exactly as they were read. Directive lookups
    are case-insensitive and only consider the global section (every line
    before the first Match block), since sshd applies Match blocks
    conditionally.
    """

    def __init__(self, lines: List[ConfigLine], trailing_newline: bool = True) -> None:
        self.lines = lines
        self.trailing_newline = trailing_newline

    @classmethod
    def parse(cls, text: str) -> "SshdConfig":
        # Split on "\n" only: "\r" stays in raw and so do form feeds and
        # other characters str.splitlines() would treat as line breaks.
        raw_lines = text.split("\n")
        trailing_newline = raw_lines[-1] == ""
        if trailing_newline:
            raw_lines.pop()
        return cls([parse_line(raw) for raw in raw_lines], trailing_newline)

    @classmethod
    def load(cls, path: Path) -> "SshdConfig":
        with open(path, "r", encoding="utf-8", errors="surrogateescape", newline="") as f:
            return cls.parse(f.read())

    def render(self) -> str:
        text = "\n".join(line.raw for line in self.lines)
        if self.lines and self.trailing_newline:
            text += "\n"
        return text

    def save(self, path: Path) -> None:
        # Writing in place keeps the file's mode and ownership.
        with open(path, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
            f.write(self.render())

    def _line_ending(self, raw: Optional[str] = None) -> str:
        if raw is not None:
            return "\r" if raw.endswith("\r") else ""
        return "\r" if any(line.raw.endswith("\r") for line in self.lines) else ""

    def _match_start(self) -> int:
        for index, line in enumerate(self.lines):
            if line.kind is LineKind.DIRECTIVE and line.key.lower() == "match":
                return index
        return len(self.lines)

    def global_directives(self) -> List[Tuple[int, ConfigLine]]:
        return [
            (index, line)
            for index, line in enumerate(self.lines[: self._match_start()])
            if line.kind is LineKind.DIRECTIVE
        ]

    def find(self, key: str) -> List[int]:
        """Return indexes of active global directives named key."""
        wanted = key.lower()
        return [i for i, line in self.global_directives() if line.key.lower() == wanted]

    def get(self, key: str) -> Optional[str]:
        """Return the effective global value of key (sshd uses the first one)."""
        indexes = self.find(key)
        return self.lines[indexes[0]].value if indexes else None

    def set(self, key: str, value: str) -> Optional[str]:
        """
        Set a global directive so that exactly one active line carries it.

        The first active occurrence is rewritten in place and later duplicates
        are dropped. Commented-out occurrences are left untouched. If the
        directive is absent it is inserted ahead of the first Match block.

        Returns:
            The previous effective value, or None if the directive was unset.
        """
        indexes = self.find(key)
        previous = self.lines[indexes[0]].value if indexes else None
        if indexes:
            first = self.lines[indexes[0]].raw
            indent = first[: len(first) - len(first.lstrip())]
            eol = self._line_ending(first)
            self.lines[indexes[0]] = ConfigLine(
                LineKind.DIRECTIVE, f"{indent}{key} {value}{eol}", key, value
            )
            for index in reversed(indexes[1:]):
                del self.lines[index]
        else:
            eol = self._line_ending()
            self.lines.insert(
                self._insert_position(),
                ConfigLine(LineKind.DIRECTIVE, f"{key} {value}{eol}", key, value),
            )
        return previous

    def _insert_position(self) -> int:
        position = self._match_start()
        if position == len(self.lines):
            return position
        # Keep comments that introduce the Match block attached to it.
        while position > 0 and self.lines[position - 1].kind is LineKind.COMMENT:
            position -= 1
        return position

    def includes(self, base_dir: Path) -> List[Path]:
        """Expand Include directives of the global section into file paths."""
        paths: List[Path] = []
        for _, line in self.global_directives():
            if line.key.lower() != "include":
                continue
            try:
                patterns = shlex.split(line.value or "")
            except ValueError as e:
                logger.warning(f"Skipping unparsable Include '{line.value}': {e}")
                continue
            for pattern in patterns:
                if not os.path.isabs(pattern):
                    pattern = str(base_dir / pattern)
                paths.extend(Path(p) for p in sorted(glob.glob(pattern)))
        return paths


def parse_line(raw: str) -> ConfigLine:
    stripped = raw.strip()
    if not stripped:
        return ConfigLine(LineKind.BLANK, raw)
    if stripped.startswith("#"):
        return ConfigLine(LineKind.COMMENT, raw)
    match = _DIRECTIVE_RE.match(raw)
    if match is None:
        return ConfigLine(LineKind.DIRECTIVE, raw, stripped, "")
    return ConfigLine(
        LineKind.DIRECTIVE, raw, match.group("key"), match.group("value").strip()
    )


# ----------------------------------------------------------------
# UI Helper Functions
# ----------------------------------------------------------------
def clear_screen() -> None:
    console.clear()


def create_header() -> Panel:
    """
    Create a dynamic ASCII banner header using Pyfiglet.
    The font adapts to the terminal width and each line gets a frost gradient.
    """
    term_width, _ = shutil.get_terminal_size((80, 24))
    font_to_use = "slant" if term_width >= 80 else "small"
    try:
        fig = pyfiglet.Figlet(font=font_to_use, width=min(term_width - 10, 120))
        ascii_art = fig.renderText(APP_NAME)
    except Exception:
        ascii_art = f"  {APP_NAME}  "
    ascii_lines = [line for line in ascii_art.splitlines() if line.strip()]
    colors = NordColors.get_frost_gradient(len(ascii_lines))
    combined_text = Text()
    for i, line in enumerate(ascii_lines):
        combined_text.append(Text(line, style=f"bold {colors[i % len(colors)]}"))
        if i < len(ascii_lines) - 1:
            combined_text.append("\n")
    return Panel(
        combined_text,
        border_style=NordColors.FROST_1,
        padding=(1, 2),
        title=Text(f"v{VERSION}", style=f"bold {NordColors.SNOW_STORM_2}"),
        title_align="right",
        subtitle=Text(APP_SUBTITLE, style=NordColors.SNOW_STORM_1),
        box=box.ROUNDED,
    )


def print_message(text: str, style: str = NordColors.FROST_2, prefix: str = "•") -> None:
    console.print(f"[{style}]{prefix} {text}[/{style}]")


def print_info(message: str) -> None:
    print_message(message, NordColors.FROST_3, "ℹ")


def print_success(message: str) -> None:
    print_message(message, NordColors.GREEN, "✓")


def print_warning(message: str) -> None:
    print_message(message, NordColors.YELLOW, "⚠")


def print_error(message: str) -> None:
    print_message(message, NordColors.RED, "✗")


def print_step(message: str) -> None:
    print_message(message, NordColors.FROST_2, "→")


def print_section(title: str) -> None:
    console.print()
    console.print(f"[bold {NordColors.FROST_3}]{title}[/]")
    console.print(f"[{NordColors.FROST_3}]{'─' * len(title)}[/]")
    console.print()


def get_user_input(prompt: str, default: str = "") -> str:
    return Prompt.ask(
        f"[bold {NordColors.FROST_2}]{prompt}[/]",
        default=default,
        show_default=bool(default),
        console=console,
    ).strip()


def get_confirmation(prompt: str, default: bool = False) -> bool:
    return Confirm.ask(
        f"[bold {NordColors.YELLOW}]{prompt}[/]", default=default, console=console
    )


def wait_for_key() -> None:
    Prompt.ask(
        f"[{NordColors.FROST_2}]Press Enter to continue...[/]",
        default="",
        show_default=False,
        console=console,
    )


# ----------------------------------------------------------------
# Logging Setup
# ----------------------------------------------------------------
def setup_logging(cfg: AuthManagerConfig) -> logging.Logger:
    """
    Send the audit trail to cfg.log_file. When the file cannot be opened the
    records go to the console through rich instead.
    """
    logger.setLevel(logging.DEBUG)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    try:
        log_dir = os.path.dirname(cfg.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(cfg.log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S")
        )
        logger.addHandler(file_handler)
        os.chmod(cfg.log_file, 0o600)
    except OSError as e:
        console_handler = RichHandler(console=console, rich_tracebacks=True)
        console_handler.setLevel(logging.WARNING)
        logger.addHandler(console_handler)
        print_warning(f"Could not open log file {cfg.log_file}: {e}")
        print_step("Continuing with console logging only...")
    return logger


# ----------------------------------------------------------------
# Command Execution Helper
# ----------------------------------------------------------------
def command_exists(cmd: str) -> bool:
    return shutil.which(cmd) is not None


def run_command(
    cmd: List[str],
    check: bool = False,
    capture_output: bool = True,
    timeout: Optional[int] = None,
) -> subprocess.CompletedProcess:
    """
    Execute a command given as discrete arguments, never through a shell.

    Raises:
        FileNotFoundError: The executable does not exist.
        subprocess.CalledProcessError: check is set and the command failed.
        subprocess.TimeoutExpired: The command exceeded timeout.
    """
    logger.debug(f"Running: {shlex.join(cmd)}")
    try:
        return subprocess.run(
            cmd,
            check=check,
            text=True,
            capture_output=capture_output,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as e:
        logger.error(f"Command failed ({e.returncode}): {shlex.join(cmd)}")
        if e.stderr:
            console.print(f"[bold {NordColors.RED}]Stderr: {e.stderr.strip()}[/]")
        raise
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout} seconds: {shlex.join(cmd)}")
        raise


# ----------------------------------------------------------------
# Signal Handling
# ----------------------------------------------------------------
def signal_handler(signum: int, frame: Any) -> None:
    sig_name = signal.Signals(signum).name
    print_warning(f"\nProcess interrupted by {sig_name}. Exiting...")
    logger.warning(f"Interrupted by {sig_name}")
    sys.exit(128 + signum)


# ----------------------------------------------------------------
# Privilege Gate
# ----------------------------------------------------------------
def check_privileges() -> None:
    """Terminate with status 1 unless running as root."""
    if os.geteuid() != 0:
        print_error("This script must be run as root or with sudo privileges.")
        print_step(f"Please run: sudo {sys.argv[0]}")
        sys.exit(1)


# ----------------------------------------------------------------
# Key Generator
# ----------------------------------------------------------------
def lookup_user(username: str) -> Optional[UserAccount]:
    try:
        record = pwd.getpwnam(username)
    except KeyError:
        return None
    return UserAccount(username, Path(record.pw_dir), record.pw_uid, record.pw_gid)


def is_valid_key_name(key_name: str) -> bool:
    return bool(key_name) and key_name not in (".", "..") and os.sep not in key_name


def secure_path(path: Path, mode: int, uid: int, gid: int, directory: bool = False) -> None:
    """
    chmod and chown path through a descriptor opened with O_NOFOLLOW.

    Paths below a user's home are under that user's control, so a symlink
    planted there raises OSError instead of redirecting root's changes.
    """
    flags = os.O_RDONLY | os.O_NOFOLLOW | os.O_NONBLOCK
    if directory:
        flags |= os.O_DIRECTORY
    fd = os.open(path, flags)
    try:
        if not directory and not stat.S_ISREG(os.fstat(fd).st_mode):
            raise OSError(f"Not a regular file: {path}")
        os.fchmod(fd, mode)
        os.fchown(fd, uid, gid)
    finally:
        os.close(fd)


def ensure_ssh_dir(account: UserAccount) -> None:
    if not os.path.lexists(account.ssh_dir):
        account.ssh_dir.mkdir(mode=0o700)
        print_step(f"Created {account.ssh_dir}")
    secure_path(account.ssh_dir, 0o700, account.uid, account.gid, directory=True)


def generate_key_pair(
    cfg: AuthManagerConfig,
    account: UserAccount,
    key_path: Path,
    use_passphrase: bool = False,
) -> Optional[KeyPair]:
    """
    Run ssh-keygen for account and fix up the resulting files.

    Any existing pair at key_path is removed first; callers must have the
    operator's consent before reaching this point.
    """
    pair = KeyPair(key_path, cfg.key_type, account.name)
    for path in (pair.private_path, pair.public_path):
        if os.path.lexists(path):
            path.unlink()
            logger.info(f"Removed existing key file {path} before regeneration")

    cmd = [
        "ssh-keygen",
        "-t", cfg.key_type,
        "-b", str(cfg.key_bits),
        "-m", cfg.key_format,
        "-C", f"{account.name}@{socket.gethostname()}",
        "-f", str(key_path),
    ]
    if not use_passphrase:
        cmd += ["-N", ""]

    try:
        if use_passphrase:
            # ssh-keygen needs the terminal to prompt for the passphrase.
            result = run_command(cmd, capture_output=False)
        else:
            with Progress(
                SpinnerColumn(style=f"bold {NordColors.FROST_1}"),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                progress.add_task("Generating SSH key pair...", total=None)
                result = run_command(cmd)
    except (OSError, subprocess.SubprocessError) as e:
        print_error(f"Failed to run ssh-keygen: {e}")
        logger.error(f"ssh-keygen could not be run for {key_path}: {e}")
        return None

    if result.returncode != 0:
        print_error("Failed to create SSH key pair.")
        if result.stderr:
            console.print(f"[dim]{result.stderr.strip()}[/dim]")
        logger.error(f"ssh-keygen exited {result.returncode} for {key_path}")
        return None
    if not (pair.private_path.is_file() and pair.public_path.is_file()):
        print_error("ssh-keygen reported success but the key files are missing.")
        logger.error(f"Key files missing after ssh-keygen for {key_path}")
        return None

    set_key_permissions(pair, account)
    logger.info(f"Generated {cfg.key_type} key pair {key_path} for {account.name}")
    return pair


def set_key_permissions(pair: KeyPair, account: UserAccount) -> None:
    secure_path(pair.private_path, 0o600, account.uid, account.gid)
    secure_path(pair.public_path, 0o644, account.uid, account.gid)


def read_nofollow(path: Path) -> bytes:
    fd = os.open(path, os.O_RDONLY | os.O_NOFOLLOW | os.O_NONBLOCK)
    with os.fdopen(fd, "rb") as f:
        return f.read()


def authorize_public_key(pair: KeyPair, account: UserAccount) -> bool:
    """
    Append the public key to the account's authorized_keys.

    Returns:
        True if the key was added, False if it was already present.
    """
    authorized_keys = account.ssh_dir / "authorized_keys"
    public_key = read_nofollow(pair.public_path).decode("utf-8", "surrogateescape").strip()
    created = not os.path.lexists(authorized_keys)
    fd = os.open(
        authorized_keys, os.O_RDWR | os.O_CREAT | os.O_NOFOLLOW | os.O_NONBLOCK, 0o600
    )
    with os.fdopen(fd, "r+", encoding="utf-8", errors="surrogateescape", newline="") as f:
        if not stat.S_ISREG(os.fstat(fd).st_mode):
            raise OSError(f"Not a regular file: {authorized_keys}")
        if created:
            os.fchmod(fd, 0o600)
            os.fchown(fd, account.uid, account.gid)
        content = f.read()
        if public_key in [line.strip() for line in content.splitlines()]:
            return False
        if content and not content.endswith("\n"):
            f.write("\n")
        f.write(public_key + "\n")
    logger.info(f"Added {pair.public_path} to {authorized_keys}")
    return True


def export_pem(pair: KeyPair, account: UserAccount, overwrite: bool = False) -> Path:
    """
    Copy the private key to <home>/<key>.pem.

    The file is created exclusively with mode 0600, so the key is never
    readable by others and an existing path (symlinks included) is only
    replaced when overwrite is set.
    """
    pem_file = account.home / f"{pair.private_path.name}.pem"
    key_data = read_nofollow(pair.private_path)
    if overwrite and os.path.lexists(pem_file):
        pem_file.unlink()
    fd = os.open(pem_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_NOFOLLOW, 0o600)
    with os.fdopen(fd, "wb") as f:
        os.fchmod(fd, 0o600)
        os.fchown(fd, account.uid, account.gid)
        f.write(key_data)
    logger.info(f"Exported private key {pair.private_path} to {pem_file}")
    return pem_file


def create_ssh_key(cfg: AuthManagerConfig) -> int:
    """Interactively create a key pair for a local user."""
    clear_screen()
    print_section("Create SSH Key Pair")

    username = get_user_input("Enter the username to create the key for")
    if not username:
        print_error("A username is required.")
        return 1
    account = lookup_user(username)
    if account is None:
        print_error(f"User '{username}' not found.")
        logger.warning(f"Key creation refused: user {username} not found")
        return 1

    key_name = get_user_input("Enter a name for the key", default=cfg.default_key_name)
    key_name = key_name or cfg.default_key_name
    if not is_valid_key_name(key_name):
        print_error(f"Invalid key name '{key_name}'. Use a plain file name.")
        return 1

    key_path = account.ssh_dir / key_name
    pair = KeyPair(key_path, cfg.key_type, account.name)
    if os.path.lexists(pair.private_path) or os.path.lexists(pair.public_path):
        print_warning(f"A key named '{key_name}' already exists in {account.ssh_dir}.")
        if not get_confirmation("Do you want to overwrite it?"):
            print_warning("Key creation aborted.")
            return 1

    use_passphrase = get_confirmation("Protect the private key with a passphrase?")

    try:
        ensure_ssh_dir(account)
    except OSError as e:
        print_error(f"Failed to prepare {account.ssh_dir}: {e}")
        return 1

    try:
        created = generate_key_pair(cfg, account, key_path, use_passphrase)
    except OSError as e:
        print_error(f"Failed to set up the key files: {e}")
        logger.error(f"Key file setup failed for {key_path}: {e}")
        return 1
    if created is None:
        return 1

    print_success("SSH key pair created successfully!")
    print_info(f"Private key: {created.private_path}")
    print_info(f"Public key: {created.public_path}")

    try:
        if authorize_public_key(created, account):
            print_success("Public key added to authorized_keys.")
        else:
            print_info("Public key is already present in authorized_keys.")
    except OSError as e:
        print_error(f"Failed to update authorized_keys: {e}")

    if get_confirmation("Do you want to export the private key as a .pem file?"):
        pem_file = account.home / f"{key_name}.pem"
        overwrite = False
        if os.path.lexists(pem_file):
            overwrite = get_confirmation(f"{pem_file} exists. Overwrite it?")
        if os.path.lexists(pem_file) and not overwrite:
            print_warning("PEM export skipped.")
        else:
            try:
                exported = export_pem(created, account, overwrite=overwrite)
                print_success(f"Private key exported as PEM file: {exported}")
            except OSError as e:
                print_error(f"Failed to export PEM file: {e}")
    return 0


# ----------------------------------------------------------------
# Config Mutator
# ----------------------------------------------------------------
def backup_config(path: Path) -> Path:
    """Copy path to a timestamped sibling that no earlier backup has used."""
    timestamp = datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)
    backup_path = path.with_name(f"{path.name}{BACKUP_SUFFIX}{timestamp}")
    counter = 1
    while backup_path.exists():
        backup_path = path.with_name(f"{path.name}{BACKUP_SUFFIX}{timestamp}-{counter}")
        counter += 1
    shutil.copy2(path, backup_path)
    logger.info(f"Backed up {path} to {backup_path}")
    return backup_path


def validate_sshd_config(cfg: AuthManagerConfig) -> Tuple[bool, str]:
    """
    Check cfg.sshd_config with `sshd -t`.

    An unavailable validator counts as a failed validation.
    """
    sshd = shutil.which(cfg.sshd_binary) or cfg.sshd_binary
    try:
        result = run_command(
            [sshd, "-t", "-f", str(cfg.sshd_config)], timeout=cfg.command_timeout
        )
    except FileNotFoundError:
        return False, f"Validator '{cfg.sshd_binary}' not found; cannot check the configuration."
    except (OSError, subprocess.SubprocessError) as e:
        return False, f"Validator could not be run: {e}"
    diagnostics = "\n".join(s.strip() for s in (result.stdout, result.stderr) if s and s.strip())
    return result.returncode == 0, diagnostics


def restart_ssh_service(cfg: AuthManagerConfig) -> bool:
    name = cfg.service_name
    if command_exists("systemctl"):
        cmd = ["systemctl", "restart", name]
    elif command_exists("service"):
        cmd = ["service", name, "restart"]
    else:
        cmd = [f"/etc/init.d/{name}", "restart"]
    try:
        result = run_command(cmd, timeout=cfg.command_timeout)
    except (OSError, subprocess.SubprocessError) as e:
        print_error(f"Could not run '{shlex.join(cmd)}': {e}")
        logger.error(f"Restart of {name} could not be run: {e}")
        return False
    if result.returncode != 0:
        if result.stderr:
            console.print(f"[dim]{result.stderr.strip()}[/dim]")
        logger.error(f"Restart of {name} failed with exit code {result.returncode}")
        return False
    logger.info(f"Restarted service {name}")
    return True


def find_include_overrides(
    config: SshdConfig, base_dir: Path, keys: List[str]
) -> List[Tuple[Path, str, str]]:
    """List (file, key, value) for drop-ins that also set one of keys."""
    overrides = []
    for include in config.includes(base_dir):
        try:
            included = SshdConfig.load(include)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read included file {include}: {e}")
            continue
        for key in keys:
            value = included.get(key)
            if value is not None:
                overrides.append((include, key, value))
    return overrides


def print_changes(changes: List[Tuple[str, Optional[str], str]]) -> None:
    table = Table(
        title="sshd_config Changes",
        box=box.ROUNDED,
        title_style=f"bold {NordColors.FROST_2}",
        border_style=NordColors.FROST_3,
    )
    table.add_column("Directive", style=f"bold {NordColors.FROST_1}")
    table.add_column("Previous", style=NordColors.SNOW_STORM_1)
    table.add_column("New", style=NordColors.GREEN)
    for key, previous, value in changes:
        table.add_row(key, previous if previous is not None else "(default)", value)
    console.print(table)


def print_restore_hint(cfg: AuthManagerConfig, backup_path: Path) -> None:
    print_warning(f"It is recommended to restore the backup: cp {backup_path} {cfg.sshd_config}")


def apply_auth_directives(
    cfg: AuthManagerConfig, directives: Dict[str, str], description: str
) -> int:
    """
    Back up, rewrite, validate and activate a set of sshd directives.

    The daemon is only restarted once `sshd -t` accepts the new file. A file
    that fails validation stays on disk so the operator can inspect it next
    to the reported backup.
    """
    config_path = cfg.sshd_config
    if not config_path.is_file():
        print_error(f"SSH daemon configuration not found: {config_path}")
        return 1

    try:
        backup_path = backup_config(config_path)
    except OSError as e:
        print_error(f"Failed to back up {config_path}: {e}")
        logger.error(f"Backup of {config_path} failed: {e}")
        return 1
    print_success(f"SSH config file backed up to: {backup_path}")

    print_step("Modifying SSH server configuration...")
    try:
        config = SshdConfig.load(config_path)
        changes = [(key, config.set(key, value), value) for key, value in directives.items()]
        config.save(config_path)
    except (OSError, ValueError) as e:
        print_error(f"Failed to update {config_path}: {e}")
        logger.error(f"Writing {config_path} failed: {e}")
        print_restore_hint(cfg, backup_path)
        return 1
    for key, previous, value in changes:
        logger.info(f"{config_path}: {key} {previous} -> {value}")
    print_changes(changes)

    for include, key, value in find_include_overrides(config, config_path.parent, list(directives)):
        print_warning(f"{include} sets '{key} {value}', which may take precedence.")

    print_step("Validating SSH server configuration...")
    valid, diagnostics = validate_sshd_config(cfg)
    if not valid:
        print_error("Configuration validation failed. The SSH service was NOT restarted.")
        if diagnostics:
            console.print(f"[dim]{diagnostics}[/dim]")
        logger.error(f"Validation of {config_path} failed: {diagnostics}")
        print_restore_hint(cfg, backup_path)
        return 1
    logger.info(f"Validation of {config_path} passed")

    print_step("Restarting SSH service...")
    if not restart_ssh_service(cfg):
        print_error("Failed to restart SSH service. Please check the configuration.")
        print_restore_hint(cfg, backup_path)
        return 1

    print_success(f"SSH service restarted successfully! {description}")
    return 0


def force_key_auth(cfg: AuthManagerConfig) -> int:
    clear_screen()
    print_section("Configure SSH Server to Use Only Key Authentication")
    code = apply_auth_directives(
        cfg, cfg.key_only_directives, "Password authentication is now disabled."
    )
    if code == 0:
        print_warning(
            "IMPORTANT: Keep your SSH session open and test key-based login "
            "in a new session before closing this one."
        )
    return code


def allow_password_auth(cfg: AuthManagerConfig) -> int:
    clear_screen()
    print_section("Revert SSH Server to Allow Password Authentication")
    return apply_auth_directives(
        cfg, cfg.password_directives, "Password authentication is now enabled."
    )


# ----------------------------------------------------------------
# Connection Tester
# ----------------------------------------------------------------
def key_file_mode(path: Path) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


def is_key_mode_secure(mode: int) -> bool:
    return (mode & ~SECURE_KEY_MODE_MASK) == 0


def parse_port(value: str) -> Optional[int]:
    if not value.isdigit():
        return None
    port = int(value)
    return port if 1 <= port <= 65535 else None


def build_ssh_command(cfg: AuthManagerConfig, target: ConnectionTarget) -> List[str]:
    return [
        "ssh",
        "-i", str(target.key_file),
        "-p", str(target.port),
        "-o", f"ConnectTimeout={cfg.connect_timeout}",
        "-o", "BatchMode=yes",
        "-o", "StrictHostKeyChecking=accept-new",
        target.destination,
        REMOTE_TEST_COMMAND,
    ]


def probe_connection(
    cfg: AuthManagerConfig, target: ConnectionTarget
) -> Optional[subprocess.CompletedProcess]:
    """
    Attempt the remote login. Returns None when the attempt timed out.

    Raises:
        FileNotFoundError: The ssh client is not installed.
    """
    cmd = build_ssh_command(cfg, target)
    try:
        return run_command(cmd, timeout=cfg.connect_timeout + cfg.command_timeout)
    except subprocess.TimeoutExpired:
        return None


def report_connection_result(
    target: ConnectionTarget, result: Optional[subprocess.CompletedProcess]
) -> None:
    if result is None:
        print_error(f"SSH connection test to {target.destination} timed out.")
        passed = False
    else:
        if result.stdout and result.stdout.strip():
            console.print(f"[{NordColors.SNOW_STORM_1}]{result.stdout.strip()}[/]")
        if result.stderr and result.stderr.strip():
            console.print(f"[dim]{result.stderr.strip()}[/dim]")
        print_info(f"ssh exit status: {result.returncode}")
        passed = result.returncode == 0

    console.print()
    if passed:
        print_success("SSH connection test PASSED!")
        print_success("The PEM key is working correctly.")
        return
    print_error("SSH connection test FAILED!")
    print_warning("Possible issues:")
    for issue in (
        "PEM key file is incorrect or corrupted",
        "Username is incorrect",
        "Server is not accessible",
        "SSH service is not running on the server",
        "Firewall is blocking the connection",
        "Public key is not in the server's authorized_keys",
    ):
        console.print(f"  - {issue}")


def run_connection_test(cfg: AuthManagerConfig) -> int:
    """
    Interactively test a key against a remote host.

    Returns 0 once a connection attempt has been made, whether or not the
    login succeeded, and 1 when a precondition stopped the attempt.
    """
    clear_screen()
    print_section("Test SSH Connection with PEM Key")

    host = get_user_input("Enter the server IP address or hostname")
    username = get_user_input("Enter the username")
    key_input = get_user_input("Enter the path to the PEM key file")
    port_input = get_user_input("Enter the SSH port", default=str(cfg.default_ssh_port))

    if not host or not username or not key_input:
        print_error("All fields are required.")
        return 1
    port = parse_port(port_input or str(cfg.default_ssh_port))
    if port is None:
        print_error("SSH port must be a number between 1 and 65535.")
        return 1

    target = ConnectionTarget(host, username, Path(key_input).expanduser(), port)
    if not target.key_file.is_file():
        print_error(f"PEM file '{target.key_file}' does not exist.")
        return 1

    mode = key_file_mode(target.key_file)
    if not is_key_mode_secure(mode):
        print_warning(f"PEM file permissions are not secure (current: {mode:o}).")
        print_warning("Recommended permissions: 600 or 400")
        if not get_confirmation("Do you want to continue anyway?"):
            print_warning("Test aborted.")
            return 1

    print_step("Testing SSH connection...")
    console.print(f"[dim]Command: {shlex.join(build_ssh_command(cfg, target))}[/dim]")
    console.print()
    try:
        result = probe_connection(cfg, target)
    except OSError as e:
        print_error(f"Could not run the ssh client: {e}")
        return 1

    if result is None:
        logger.info(f"Connection test to {target.destination}:{port} timed out")
    else:
        logger.info(
            f"Connection test to {target.destination}:{port} exited {result.returncode}"
        )
    report_connection_result(target, result)
    return 0


# ----------------------------------------------------------------
# Main Menu
# ----------------------------------------------------------------
MENU_ACTIONS = {
    "1": ("Create SSH Key Pair (PEM)", create_ssh_key),
    "2": ("Force SSH to Use Only Key Authentication", force_key_auth),
    "3": ("Revert to Password Authentication", allow_password_auth),
    "4": ("Test SSH Connection with PEM Key", run_connection_test),
}


def show_menu() -> None:
    clear_screen()
    console.print(create_header())
    console.print()
    console.print("[bold]Main Menu:[/]")
    for key, (label, _) in MENU_ACTIONS.items():
        console.print(f"[bold {NordColors.YELLOW}]{key}.[/] {label}")
    console.print(f"[bold {NordColors.YELLOW}]5.[/] Exit")
    console.print()


def main_menu(cfg: AuthManagerConfig) -> None:
    """Display the menu and dispatch choices until the operator exits."""
    while True:
        show_menu()
        choice = get_user_input("Enter your choice [1-5]").lower()
        if choice in EXIT_CHOICES:
            print_info("Goodbye!")
            sys.exit(0)
        action = MENU_ACTIONS.get(choice)
        if action is None:
            print_error("Invalid choice. Please try again.")
            time.sleep(cfg.invalid_choice_delay)
            continue
        label, handler = action
        code = handler(cfg)
        logger.info(f"Menu action '{label}' finished with status {code}")
        console.print()
        wait_for_key()


def main() -> None:
    """Entry point for both the script and the ssh-auth-manager console script."""
    try:
        install_rich_traceback(show_locals=True)
        cfg = AuthManagerConfig.from_env()
        setup_logging(cfg)
        check_privileges()
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)
        logger.info(f"{APP_NAME} v{VERSION} started")
        main_menu(cfg)
    except Exception as e:
        print_error(f"An unexpected error occurred: {e}")
        logger.exception("Unexpected error")
        sys.exit(1)


if __name__ == "__main__":
    main()
