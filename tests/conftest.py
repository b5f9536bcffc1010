from __future__ import annotations

import threading
from datetime import date
from pathlib import Path

import pytest

from sshmgmt.node_agent.accounts import AccountManager, AccountRecord, CommandResult
from sshmgmt.node_agent.usage import UsageAccountant


class FakeShadow:
    """In-memory stand-in for the shadow-utils tools, driven through ``AccountManager``'s runner seam."""

    def __init__(self, groups=("grp1", "grp2", "grp3")) -> None:
        self.groups = {name: 2000 + index for index, name in enumerate(groups)}
        self.users: dict[str, dict] = {}
        self.calls: list[list[str]] = []
        self.envs: list[dict | None] = []
        self._lock = threading.Lock()
        self._next_uid = 1001

    def seed(self, username: str, group: str = "grp1", exp_date: str | None = None) -> None:
        with self._lock:
            self._create(username, group, "$2b$12$seeded", "/bin/rbash", exp_date)

    def _create(self, username, group, password_hash, shell, exp_date) -> None:
        self.users[username] = {
            "uid": self._next_uid,
            "group": group,
            "password_hash": password_hash,
            "shell": shell,
            "exp_date": exp_date,
            "locked": False,
        }
        self._next_uid += 1

    def records(self) -> list[AccountRecord]:
        with self._lock:
            return [
                AccountRecord(
                    username=name,
                    uid=entry["uid"],
                    gid=self.groups[entry["group"]],
                    primary_group=entry["group"],
                )
                for name, entry in sorted(self.users.items())
            ]

    def __call__(self, args, env=None) -> CommandResult:
        with self._lock:
            self.calls.append(list(args))
            self.envs.append(dict(env) if env is not None else None)
            handler = getattr(self, f"_{args[0]}")
            return handler(list(args[1:]))

    @staticmethod
    def _options(args: list[str]) -> tuple[dict[str, str | None], str]:
        options: dict[str, str | None] = {}
        username = args[-1]
        rest = args[:-1]
        if rest and rest[-1] == "--":
            rest = rest[:-1]
        index = 0
        while index < len(rest):
            flag = rest[index]
            if flag in ("-L", "-U", "-l"):
                options[flag] = None
                index += 1
            else:
                options[flag] = rest[index + 1]
                index += 2
        return options, username

    def _missing(self, tool: str, username: str) -> CommandResult:
        return CommandResult(6, stderr=f"{tool}: user '{username}' does not exist\n")

    def _useradd(self, args: list[str]) -> CommandResult:
        options, username = self._options(args)
        if username in self.users:
            return CommandResult(9, stderr=f"useradd: user '{username}' already exists\n")
        if options["-g"] not in self.groups:
            return CommandResult(6, stderr=f"useradd: group '{options['-g']}' does not exist\n")
        self._create(username, options["-g"], options["-p"], options["-s"], options["-e"])
        return CommandResult(0)

    def _userdel(self, args: list[str]) -> CommandResult:
        username = args[-1]
        if username not in self.users:
            return self._missing("userdel", username)
        del self.users[username]
        return CommandResult(0)

    def _usermod(self, args: list[str]) -> CommandResult:
        options, username = self._options(args)
        entry = self.users.get(username)
        if entry is None:
            return self._missing("usermod", username)
        if "-g" in options:
            if options["-g"] not in self.groups:
                return CommandResult(6, stderr=f"usermod: group '{options['-g']}' does not exist\n")
            entry["group"] = options["-g"]
        if "-p" in options:
            entry["password_hash"] = options["-p"]
        if "-L" in options:
            entry["locked"] = True
        if "-U" in options:
            entry["locked"] = False
        return CommandResult(0)

    def _chage(self, args: list[str]) -> CommandResult:
        options, username = self._options(args)
        entry = self.users.get(username)
        if "-l" in options:
            if entry is None:
                return CommandResult(1, stderr=f"chage: user '{username}' does not exist in /etc/passwd\n")
            if entry["exp_date"]:
                expires = date.fromisoformat(entry["exp_date"]).strftime("%b %d, %Y")
            else:
                expires = "never"
            stdout = (
                "Last password change\t\t\t\t\t: Jan 01, 2024\n"
                "Password expires\t\t\t\t\t: never\n"
                f"Account expires\t\t\t\t\t\t: {expires}\n"
            )
            return CommandResult(0, stdout=stdout)
        if entry is None:
            return self._missing("chage", username)
        entry["exp_date"] = options["-E"]
        return CommandResult(0)


@pytest.fixture
def shadow() -> FakeShadow:
    return FakeShadow()


@pytest.fixture
def trace_file(tmp_path: Path) -> Path:
    path = tmp_path / "nethogs.log"
    path.write_text("")
    return path


@pytest.fixture
def accounts(shadow: FakeShadow, trace_file: Path) -> AccountManager:
    return AccountManager(
        password_salt="test-salt",
        default_shell="/bin/rbash",
        accountant=UsageAccountant(trace_file),
        runner=shadow,
        account_source=shadow.records,
    )
