"""Build identifier resolution from the hosting platform or the git checkout.

The identifier is a best-effort diagnostic shown in startup logs and on the
info page. Render strips the ``.git`` directory from its images but exposes
the commit in the environment; everywhere else the local checkout is probed.
If you run a private fork you can leave git out of the image entirely and
the identifier simply reads ``unknown``.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from relaygate.logging import get_logger

logger = get_logger(__name__)

UNKNOWN_BUILD = "unknown"
DEPLOYMENT_DESCRIPTOR = "Dockerfile"

CommandRunner = Callable[[Sequence[str]], Awaitable[str]]

_REMOTE_PATTERN = re.compile(r".*[/:]([\w-]+)/([\w\-.]+?)(?:\.git)?$")


@dataclass(frozen=True)
class BuildInfo:
    """Immutable build identifier computed once at startup."""

    value: str
    source: Literal["platform", "git", "unknown"] = "unknown"
    modified: bool = False
    changes: tuple[str, ...] = ()

    def __str__(self) -> str:
        return self.value


class BuildProbeError(RuntimeError):
    """A version-control probe exited unsuccessfully."""

    def __init__(self, command: Sequence[str], returncode: int | None, stderr: str) -> None:
        super().__init__(
            f"{' '.join(command)} exited with {returncode}: {stderr.strip()}"
        )
        self.command = tuple(command)
        self.returncode = returncode
        self.stderr = stderr


def make_subprocess_runner(cwd: Path | None = None) -> CommandRunner:
    """Return a runner executing commands with asyncio subprocesses."""

    async def run(command: Sequence[str]) -> str:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
        )
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        if process.returncode != 0:
            raise BuildProbeError(
                command, process.returncode, stderr.decode("utf-8", "replace")
            )
        return stdout.decode("utf-8", "replace")

    return run


def parse_remote(remote_url: str) -> str:
    """Reduce a git remote URL to ``owner/repo`` (empty if unrecognized)."""
    match = _REMOTE_PATTERN.match(remote_url.strip())
    if match is None:
        return ""
    return "/".join(match.groups())


def filter_status(status: str, descriptor: str = DEPLOYMENT_DESCRIPTOR) -> tuple[str, ...]:
    """Drop blank lines and deployment descriptor edits from porcelain output."""
    return tuple(
        line
        for line in status.split("\n")
        if line.strip() and not line.rstrip().endswith(descriptor)
    )


def format_build(sha: str, branch: str, repo: str, *, modified: bool = False) -> str:
    suffix = " (modified)" if modified else ""
    return f"{sha}{suffix} ({branch}@{repo})"


class BuildInfoResolver:
    """Resolve the running build through an ordered fallback chain.

    1. Render environment variables, when ``RENDER`` is set.
    2. Local git metadata (sha, branch, origin remote, working tree status).
    3. The literal ``"unknown"`` on any failure.

    ``resolve`` never raises.
    """

    def __init__(
        self,
        *,
        environ: Mapping[str, str] | None = None,
        runner: CommandRunner | None = None,
        probe_timeout: float | None = None,
        cwd: Path | None = None,
        descriptor: str = DEPLOYMENT_DESCRIPTOR,
    ) -> None:
        self.environ = os.environ if environ is None else environ
        self.cwd = cwd or Path.cwd()
        self.runner = runner or make_subprocess_runner(self.cwd)
        self.probe_timeout = probe_timeout
        self.descriptor = descriptor
        self._trust_registered = False

    async def resolve(self) -> BuildInfo:
        if self.environ.get("RENDER"):
            return self._from_platform()
        try:
            return await self._from_git()
        except Exception as exc:
            logger.error(
                "build_info_probe_failed",
                error=str(exc),
                stderr=getattr(exc, "stderr", None),
            )
            return BuildInfo(UNKNOWN_BUILD)

    def _from_platform(self) -> BuildInfo:
        sha = self.environ.get("RENDER_GIT_COMMIT", "")[:7] or "unknown SHA"
        branch = self.environ.get("RENDER_GIT_BRANCH") or "unknown branch"
        repo = self.environ.get("RENDER_GIT_REPO_SLUG") or "unknown repo"
        build = BuildInfo(format_build(sha, branch, repo), source="platform")
        logger.info("build_info_resolved", build=build.value, source=build.source)
        return build

    async def _probe(self, *command: str, strip: bool = True) -> str:
        output = await asyncio.wait_for(self.runner(command), timeout=self.probe_timeout)
        return output.strip() if strip else output

    async def _register_trust(self) -> None:
        # Hugging Face mounts Spaces with ownership git treats as dubious.
        if self._trust_registered or not self.environ.get("SPACE_ID"):
            return
        await self._probe(
            "git", "config", "--global", "--add", "safe.directory", str(self.cwd)
        )
        self._trust_registered = True

    async def _from_git(self) -> BuildInfo:
        await self._register_trust()
        sha, branch, remote, status = await asyncio.gather(
            self._probe("git", "rev-parse", "--short", "HEAD"),
            self._probe("git", "rev-parse", "--abbrev-ref", "HEAD"),
            self._probe("git", "config", "--get", "remote.origin.url"),
            # Porcelain lines start with a status column that may be a space.
            self._probe("git", "status", "--porcelain", strip=False),
        )
        changes = filter_status(status, self.descriptor)
        modified = bool(changes)
        build = BuildInfo(
            format_build(sha, branch, parse_remote(remote), modified=modified),
            source="git",
            modified=modified,
            changes=changes,
        )
        logger.info(
            "build_info_resolved",
            build=build.value,
            source=build.source,
            changes=list(changes),
        )
        return build
