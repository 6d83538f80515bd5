"""Build identifier resolution tests."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Sequence
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from relaygate.build_info import (
    BuildInfoResolver,
    BuildProbeError,
    filter_status,
    format_build,
    make_subprocess_runner,
    parse_remote,
)

GIT_OUTPUTS = {
    ("git", "rev-parse", "--short", "HEAD"): "abc1234\n",
    ("git", "rev-parse", "--abbrev-ref", "HEAD"): "main\n",
    ("git", "config", "--get", "remote.origin.url"): "git@github.com:acme/relaygate.git\n",
    ("git", "status", "--porcelain"): "",
}


class FakeRunner:
    """Records commands and answers from a lookup table."""

    def __init__(self, outputs: dict[tuple[str, ...], str] | None = None) -> None:
        self.outputs = dict(GIT_OUTPUTS if outputs is None else outputs)
        self.commands: list[tuple[str, ...]] = []

    async def __call__(self, command: Sequence[str]) -> str:
        command = tuple(command)
        self.commands.append(command)
        if command not in self.outputs:
            raise BuildProbeError(command, 128, "fatal: not a git repository")
        return self.outputs[command]


def _resolver(runner: FakeRunner, environ: dict[str, str] | None = None, **kwargs) -> BuildInfoResolver:
    return BuildInfoResolver(
        environ=environ or {}, runner=runner, cwd=Path("/srv/app"), **kwargs
    )


@pytest.mark.asyncio
async def test_render_environment_wins() -> None:
    runner = FakeRunner()
    resolver = _resolver(
        runner,
        {
            "RENDER": "true",
            "RENDER_GIT_COMMIT": "0123456789abcdef",
            "RENDER_GIT_BRANCH": "release",
            "RENDER_GIT_REPO_SLUG": "acme/relaygate",
        },
    )
    build = await resolver.resolve()
    assert str(build) == "0123456 (release@acme/relaygate)"
    assert build.source == "platform"
    assert runner.commands == []


@pytest.mark.asyncio
async def test_render_environment_with_missing_values() -> None:
    build = await _resolver(FakeRunner(), {"RENDER": "true"}).resolve()
    assert str(build) == "unknown SHA (unknown branch@unknown repo)"


@pytest.mark.asyncio
async def test_clean_checkout() -> None:
    build = await _resolver(FakeRunner()).resolve()
    assert str(build) == "abc1234 (main@acme/relaygate)"
    assert build.source == "git"
    assert build.modified is False


@pytest.mark.asyncio
async def test_descriptor_only_changes_are_ignored() -> None:
    outputs = dict(GIT_OUTPUTS)
    outputs[("git", "status", "--porcelain")] = " M Dockerfile\n"
    build = await _resolver(FakeRunner(outputs)).resolve()
    assert str(build) == "abc1234 (main@acme/relaygate)"


@pytest.mark.asyncio
async def test_other_changes_mark_build_modified() -> None:
    outputs = dict(GIT_OUTPUTS)
    outputs[("git", "status", "--porcelain")] = " M src/app.py\n M Dockerfile\n?? notes.txt\n"
    with capture_logs() as logs:
        build = await _resolver(FakeRunner(outputs)).resolve()
    assert str(build) == "abc1234 (modified) (main@acme/relaygate)"
    assert build.changes == (" M src/app.py", "?? notes.txt")
    resolved = [entry for entry in logs if entry["event"] == "build_info_resolved"]
    assert resolved[0]["changes"] == [" M src/app.py", "?? notes.txt"]


@pytest.mark.asyncio
async def test_probe_failure_yields_unknown() -> None:
    with capture_logs() as logs:
        build = await _resolver(FakeRunner({})).resolve()
    assert str(build) == "unknown"
    failure = [entry for entry in logs if entry["event"] == "build_info_probe_failed"]
    assert failure[0]["log_level"] == "error"
    assert "not a git repository" in failure[0]["stderr"]


@pytest.mark.asyncio
async def test_probe_timeout_yields_unknown() -> None:
    async def slow_runner(command: Sequence[str]) -> str:
        await asyncio.sleep(5)
        return ""

    resolver = BuildInfoResolver(environ={}, runner=slow_runner, probe_timeout=0.05)
    build = await resolver.resolve()
    assert str(build) == "unknown"


@pytest.mark.asyncio
async def test_space_registers_safe_directory_once() -> None:
    trust = ("git", "config", "--global", "--add", "safe.directory", "/srv/app")
    outputs = dict(GIT_OUTPUTS)
    outputs[trust] = ""
    runner = FakeRunner(outputs)
    resolver = _resolver(runner, {"SPACE_ID": "acme/relaygate"})

    await resolver.resolve()
    await resolver.resolve()

    assert runner.commands.count(trust) == 1
    assert runner.commands[0] == trust


@pytest.mark.asyncio
async def test_no_trust_command_outside_spaces() -> None:
    runner = FakeRunner()
    await _resolver(runner).resolve()
    assert all("safe.directory" not in command for command in runner.commands)


@pytest.mark.parametrize(
    ("remote", "expected"),
    [
        ("git@github.com:acme/relaygate.git", "acme/relaygate"),
        ("https://github.com/acme/relaygate.git", "acme/relaygate"),
        ("https://gitgud.io/khanon/oai-reverse-proxy", "khanon/oai-reverse-proxy"),
        ("not a remote", ""),
    ],
)
def test_parse_remote(remote: str, expected: str) -> None:
    assert parse_remote(remote) == expected


def test_filter_status_drops_blank_and_descriptor_lines() -> None:
    assert filter_status("\n M Dockerfile\n M a.py\n\n") == (" M a.py",)


def test_format_build() -> None:
    assert format_build("abc", "dev", "me/repo") == "abc (dev@me/repo)"
    assert format_build("abc", "dev", "me/repo", modified=True) == "abc (modified) (dev@me/repo)"


@pytest.mark.asyncio
async def test_subprocess_runner_returns_stdout() -> None:
    run = make_subprocess_runner()
    output = await run([sys.executable, "-c", "print('hello')"])
    assert output.strip() == "hello"


@pytest.mark.asyncio
async def test_subprocess_runner_raises_on_failure() -> None:
    run = make_subprocess_runner()
    with pytest.raises(BuildProbeError) as exc_info:
        await run([sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"])
    assert exc_info.value.returncode == 3
    assert exc_info.value.stderr == "bad"


@pytest.mark.asyncio
async def test_subprocess_runner_killed_on_timeout() -> None:
    run = make_subprocess_runner()
    with pytest.raises(TimeoutError):
        await asyncio.wait_for(
            run([sys.executable, "-c", "import time; time.sleep(30)"]), timeout=0.5
        )
