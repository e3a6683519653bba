"""Shared fixtures for armbian_imagegen tests."""

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from armbian_imagegen.config import Settings
from armbian_imagegen.configuration.schema import BuildConfiguration
from armbian_imagegen.errors import ToolError
from armbian_imagegen.tools import ToolResult


@dataclass
class ToolCall:
    """One recorded invocation."""

    command: str
    args: list[str]
    timeout: float

    @property
    def name(self) -> str:
        return Path(self.command).name


@dataclass
class _Rule:
    command: str | None
    prefix: tuple[str, ...]
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    raises: ToolError | None = None
    effect: Callable[[list[str]], None] | None = None
    calls: list[ToolCall] = field(default_factory=list)

    def matches(self, call: ToolCall) -> bool:
        if self.command is not None and call.name != self.command:
            return False
        return tuple(call.args[: len(self.prefix)]) == self.prefix


class FakeToolRunner:
    """ToolRunner that records calls and replays scripted responses.

    Rules registered later take precedence. Unmatched calls succeed with
    empty output unless default_exit_code says otherwise.
    """

    def __init__(self, default_exit_code: int = 0) -> None:
        self.calls: list[ToolCall] = []
        self.default_exit_code = default_exit_code
        self._rules: list[_Rule] = []

    def on(
        self,
        command: str | None,
        *prefix: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = 0,
        raises: ToolError | None = None,
        effect: Callable[[list[str]], None] | None = None,
    ) -> "FakeToolRunner":
        self._rules.append(
            _Rule(command, prefix, stdout, stderr, exit_code, raises, effect)
        )
        return self

    def run(self, command, args, timeout, input_data=None) -> ToolResult:
        call = ToolCall(str(command), list(args), timeout)
        self.calls.append(call)
        command_line = " ".join([call.name, *call.args])

        for rule in reversed(self._rules):
            if rule.matches(call):
                rule.calls.append(call)
                if rule.effect is not None:
                    rule.effect(call.args)
                if rule.raises is not None:
                    raise rule.raises
                return ToolResult(command_line, rule.stdout, rule.stderr, rule.exit_code)

        return ToolResult(command_line, "", "", self.default_exit_code)

    def args_of(self, command: str) -> list[list[str]]:
        """Return the argument lists of every call to a command."""
        return [c.args for c in self.calls if c.name == command]

    def invoked(self, command: str, *prefix: str) -> bool:
        return any(
            c.name == command and tuple(c.args[: len(prefix)]) == prefix
            for c in self.calls
        )


@pytest.fixture
def fake_runner() -> FakeToolRunner:
    return FakeToolRunner()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated under tmp_path, with flashing waits disabled."""
    tool = tmp_path / "tools" / "rkdeveloptool"
    loader = tmp_path / "tools" / "loader.bin"
    return Settings(
        build_dir=tmp_path / "builds",
        cache_dir=tmp_path / "cache",
        rkdeveloptool_path=tool,
        loader_path=loader,
        archive_base_url="https://dl.example.com",
        loader_settle_seconds=0,
        device_check_cooldown=5.0,
    )


@pytest.fixture
def minimal_config() -> BuildConfiguration:
    return BuildConfiguration.model_validate(
        {
            "name": "Rock 5B minimal",
            "board": {"family": "rockchip-rk3588", "name": "rock-5b", "architecture": "arm64"},
            "distribution": {"release": "bookworm", "type": "minimal"},
        }
    )


@pytest.fixture
def full_config() -> BuildConfiguration:
    return BuildConfiguration.model_validate(
        {
            "name": "Rock 5B server",
            "description": "Lab node",
            "board": {"family": "rockchip-rk3588", "name": "rock-5b", "architecture": "arm64"},
            "distribution": {"release": "bookworm", "type": "server"},
            "network": {
                "hostname": "lab-node-1",
                "wifi": {"enabled": True, "ssid": "Lab Net", "psk": "s3cret pass", "country": "de"},
            },
            "users": [{"username": "admin", "password": "pa'ss", "sudo": True}],
            "ssh": {"enabled": True, "port": 2222, "password_auth": False, "root_login": False},
            "packages": {"install": ["htop", "vim"], "remove": ["nano"]},
            "scripts": {"first_boot": ["echo hello > /root/hello"]},
        }
    )


@pytest.fixture
def failing_runner() -> FakeToolRunner:
    """Runner on which every unscripted command exits 1."""
    return FakeToolRunner(default_exit_code=1)
