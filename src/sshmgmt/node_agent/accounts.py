"""OS account lifecycle operations backed by the shadow-utils tools.

Every mutation shells out to ``useradd``/``usermod``/``userdel``/``chage`` and
classifies the process outcome once, through :func:`exit_code_to_error`, into a
:class:`UserError`. The OS account database serialises concurrent invocations;
nothing here locks.
"""

from __future__ import annotations

import grp
import os
import pwd
import re
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog
from opentelemetry import trace

from ..common.credentials import PASSWORD_PREFIX, hash_password, normalize_exp_date, recovery_password
from ..common.errors import UserError, UserErrorKind, exit_code_to_error
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import (
    ChExpMsg,
    ChGrpMsg,
    SSHUser,
    SSHUserInfo,
    UserExp,
    UserRawCreds,
    UserStatus,
)
from .usage import UsageAccountant

LOGGER = structlog.get_logger("sshmgmt.node_agent.accounts")
TRACER = trace.get_tracer("sshmgmt.node_agent.accounts")

COMMAND_COUNTER = GLOBAL_REGISTRY.register(
    Counter("sshmgmt_node_account_commands_total", "Account administration commands run, by tool")
)
COMMAND_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("sshmgmt_node_account_command_failures_total", "Failed account administration commands, by error")
)

_ACCOUNT_EXPIRES_RE = re.compile(r"^Account expires\s*:\s*(.*)$", re.MULTILINE)
_MISSING_USER_MARKER = "does not exist"
_CHAGE_DATE_FORMAT = "%b %d, %Y"


@dataclass
class CommandResult:
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""


CommandRunner = Callable[[Sequence[str], Optional[Mapping[str, str]]], CommandResult]


def run_command(args: Sequence[str], env: Optional[Mapping[str, str]] = None) -> CommandResult:
    """Run one tool to completion; a spawn failure is ``CommandNotFound``."""
    try:
        completed = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            check=False,
            env=dict(env) if env is not None else None,
        )
    except OSError as exc:
        raise UserError(UserErrorKind.COMMAND_NOT_FOUND, raw_message=str(exc)) from exc
    return CommandResult(returncode=completed.returncode, stdout=completed.stdout, stderr=completed.stderr)


@dataclass(frozen=True)
class AccountRecord:
    username: str
    uid: int
    gid: int
    primary_group: Optional[str] = None
    groups: tuple[str, ...] = field(default_factory=tuple)

    def in_group(self, group: str) -> bool:
        return group == self.primary_group or group in self.groups


def list_system_accounts() -> list[AccountRecord]:
    """Snapshot of the passwd and group databases."""
    groups = grp.getgrall()
    names_by_gid = {entry.gr_gid: entry.gr_name for entry in groups}
    supplementary: dict[str, list[str]] = {}
    for entry in groups:
        for member in entry.gr_mem:
            supplementary.setdefault(member, []).append(entry.gr_name)

    return [
        AccountRecord(
            username=entry.pw_name,
            uid=entry.pw_uid,
            gid=entry.pw_gid,
            primary_group=names_by_gid.get(entry.pw_gid),
            groups=tuple(supplementary.get(entry.pw_name, ())),
        )
        for entry in pwd.getpwall()
    ]


def _canonical_exp_date(exp_date: str) -> str:
    try:
        return normalize_exp_date(exp_date)
    except ValueError as exc:
        raise UserError(UserErrorKind.INVALID_EXP_DATE, raw_message=str(exc)) from exc


def _password_hash(password: str) -> str:
    try:
        return hash_password(password)
    except ValueError as exc:
        raise UserError(UserErrorKind.INVALID_PASSWORD_HASH, raw_message=str(exc)) from exc


class AccountManager:
    """Typed operations over the node's OS accounts."""

    def __init__(
        self,
        *,
        password_salt: str,
        password_prefix: str = PASSWORD_PREFIX,
        default_shell: str = "/bin/rbash",
        accountant: Optional[UsageAccountant] = None,
        runner: CommandRunner = run_command,
        account_source: Callable[[], list[AccountRecord]] = list_system_accounts,
    ) -> None:
        self._password_salt = password_salt
        self._password_prefix = password_prefix
        self.default_shell = default_shell
        self._accountant = accountant
        self._runner = runner
        self._account_source = account_source

    @classmethod
    def from_settings(cls, settings) -> "AccountManager":
        return cls(
            password_salt=settings.password_salt.get_secret_value(),
            password_prefix=settings.password_prefix,
            default_shell=settings.default_shell,
            accountant=UsageAccountant(settings.trace_path),
        )

    def _run(self, args: Sequence[str], env: Optional[Mapping[str, str]] = None) -> CommandResult:
        tool = args[0]
        with TRACER.start_as_current_span("node_agent.account_command", attributes={"sshmgmt.tool": tool}):
            COMMAND_COUNTER.inc(kind=tool)
            try:
                return self._runner(args, env)
            except UserError as exc:
                COMMAND_FAILURE_COUNTER.inc(kind=exc.kind.value)
                LOGGER.error("account_command_spawn_failed", tool=tool, error=exc.raw_message)
                raise

    def _check(self, args: Sequence[str]) -> CommandResult:
        result = self._run(args)
        kind = exit_code_to_error(result.returncode)
        if kind is not None:
            COMMAND_FAILURE_COUNTER.inc(kind=kind.value)
            LOGGER.warning(
                "account_command_failed",
                tool=args[0],
                returncode=result.returncode,
                error=kind.value,
                stderr=result.stderr.strip() or None,
            )
            raise UserError(kind, raw_message=result.stderr.strip() or None)
        return result

    def recovery_password(self, username: str) -> str:
        return recovery_password(username, self._password_salt, self._password_prefix)

    # Mutations

    def add(self, username: str, shell: str, group: str, exp_date: str, password: str) -> SSHUser:
        exp_date = _canonical_exp_date(exp_date)
        password_hash = _password_hash(password)
        self._check(["useradd", "-p", password_hash, "-s", shell, "-g", group, "-e", exp_date, "--", username])
        LOGGER.info("account_created", username=username, group=group, exp_date=exp_date)
        return SSHUser(
            username=username,
            password_hash=password_hash,
            shell=shell,
            usergroup=group,
            exp_date=exp_date,
        )

    def auto_add(self, prefix: str, existing_count: int, group: str, exp_date: str) -> SSHUser:
        username = f"{prefix}{existing_count + 1}"
        return self.add(username, self.default_shell, group, exp_date, self.recovery_password(username))

    def userdel(self, username: str) -> UserStatus:
        self._check(["userdel", "--", username])
        LOGGER.info("account_deleted", username=username)
        return UserStatus(username=username, status=f"user {username} successfully deleted")

    def usermod_change_pass(self, username: str, password: str) -> UserRawCreds:
        password_hash = _password_hash(password)
        self._check(["usermod", "-p", password_hash, "--", username])
        LOGGER.info("account_password_changed", username=username)
        return UserRawCreds(username=username, password=password, password_hash=password_hash)

    def restore_password(self, username: str) -> UserRawCreds:
        """Reset ``username`` to its reproducible recovery password."""
        return self.usermod_change_pass(username, self.recovery_password(username))

    def usermod_change_grp(self, username: str, group: str) -> ChGrpMsg:
        self._check(["usermod", "-g", group, "--", username])
        return ChGrpMsg(
            username=username,
            group=group,
            message=f"user {username}'s group successfully changed to {group}",
        )

    def usermod_change_exp(self, username: str, exp_date: str) -> ChExpMsg:
        exp_date = _canonical_exp_date(exp_date)
        self._check(["chage", "-E", exp_date, "--", username])
        return ChExpMsg(
            username=username,
            exp_date=exp_date,
            message=f"user {username}'s expiry date successfully changed to {exp_date}",
        )

    def lock(self, username: str) -> UserStatus:
        self._check(["usermod", "-L", "--", username])
        return UserStatus(username=username, status=f"user {username} successfully locked")

    def unlock(self, username: str) -> UserStatus:
        self._check(["usermod", "-U", "--", username])
        return UserStatus(username=username, status=f"user {username} successfully unlocked")

    # Queries

    def get_chage_exp(self, username: str) -> UserExp:
        # chage prints localised dates; pin the C locale so "%b" parses
        env = {**os.environ, "LC_ALL": "C"}
        result = self._run(["chage", "-l", "--", username], env)
        kind = exit_code_to_error(result.returncode)
        if kind is not None:
            if _MISSING_USER_MARKER in result.stderr:
                kind = UserErrorKind.INVALID_USER_OR_GROUP
            raise UserError(kind, raw_message=result.stderr.strip() or None)

        match = _ACCOUNT_EXPIRES_RE.search(result.stdout)
        if match is None:
            raise UserError(UserErrorKind.UNEXPECTED_ERROR, raw_message="no 'Account expires' field in chage output")
        value = match.group(1).strip()
        if value == "never":
            return UserExp(username=username, exp_date="never")
        try:
            exp_date = datetime.strptime(value, _CHAGE_DATE_FORMAT).date().isoformat()
        except ValueError as exc:
            raise UserError(UserErrorKind.INVALID_EXP_DATE, raw_message=value) from exc
        return UserExp(username=username, exp_date=exp_date)

    def get_user(self, username: str) -> Optional[SSHUserInfo]:
        record = next((item for item in self._account_source() if item.username == username), None)
        if record is None:
            return None
        usergroup = (record.gid, record.primary_group) if record.primary_group is not None else None
        try:
            exp_date = self.get_chage_exp(username).exp_date
        except UserError as exc:
            LOGGER.info("account_expiry_unavailable", username=username, error=exc.kind.value)
            exp_date = "N/A"
        return SSHUserInfo(username=username, userid=record.uid, usergroup=usergroup, exp_date=exp_date)

    def _users(self, prefix: str, group: Optional[str] = None) -> list[str]:
        return [
            record.username
            for record in self._account_source()
            if record.username.startswith(prefix) and (group is None or record.in_group(group))
        ]

    def get_users_by_prefix(self, prefix: str) -> list[str]:
        return self._users(prefix)

    def get_users_by_group(self, group: str) -> list[str]:
        return self._users("", group)

    def _usage(self, usernames: list[str]) -> dict[str, float]:
        if self._accountant is None:
            raise UserError(UserErrorKind.INVALID_TRACE_FILE, raw_message="no bandwidth trace configured")
        return self._accountant.usage_for(usernames)

    def get_usage_by_prefix(self, prefix: str) -> dict[str, float]:
        return self._usage(self.get_users_by_prefix(prefix))

    def get_usage_by_group(self, group: str) -> dict[str, float]:
        return self._usage(self.get_users_by_group(group))

    def get_usage_by_name(self, username: str) -> dict[str, float]:
        return self._usage([username])
