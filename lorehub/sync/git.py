"""Thin async wrapper around the git executable.

Every command runs through ``asyncio.create_subprocess_exec`` so network
operations never block the event loop. Credential prompts are disabled: a
missing credential surfaces as a failed command instead of a hung process.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class GitError(Exception):
    """A git command exited with a non-zero status."""

    def __init__(self, args: tuple[str, ...], returncode: int, stderr: str):
        self.command = args
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(
            f"git {' '.join(args)} failed ({returncode}): {self.stderr or 'no output'}"
        )


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _git_env() -> dict[str, str]:
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
    return env


async def run_git(*args: str, cwd: str | Path | None = None, check: bool = True) -> GitResult:
    """Run a git command and capture its output.

    Args:
        args: Arguments after ``git``.
        cwd: Working directory.
        check: Raise GitError on a non-zero exit.

    Returns:
        GitResult with decoded output.
    """
    logger.debug(f"git {' '.join(args)} (cwd={cwd})")
    process = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd) if cwd else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=_git_env(),
    )
    stdout, stderr = await process.communicate()
    result = GitResult(
        returncode=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    if check and not result.ok:
        raise GitError(args, result.returncode, result.stderr)
    return result


class GitRepo:
    """A local working tree driven through the git CLI."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def run(self, *args: str, check: bool = True) -> GitResult:
        return await run_git(*args, cwd=self.path, check=check)

    async def output(self, *args: str) -> str:
        return (await self.run(*args)).stdout.strip()

    # ==================== Setup ====================

    def exists(self) -> bool:
        return (self.path / ".git").exists()

    @classmethod
    async def clone(cls, url: str, path: str | Path) -> "GitRepo":
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        await run_git("clone", url, str(path), cwd=path.parent)
        return cls(path)

    async def init(self, branch: str) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        await self.run("init")
        await self.run("symbolic-ref", "HEAD", f"refs/heads/{branch}")

    async def get_config(self, key: str) -> str | None:
        result = await self.run("config", "--get", key, check=False)
        return result.stdout.strip() if result.ok else None

    async def set_config(self, key: str, value: str) -> None:
        await self.run("config", key, value)

    async def get_remote_url(self, name: str = "origin") -> str | None:
        result = await self.run("remote", "get-url", name, check=False)
        return result.stdout.strip() if result.ok else None

    async def set_remote(self, url: str, name: str = "origin") -> None:
        current = await self.get_remote_url(name)
        if current is None:
            await self.run("remote", "add", name, url)
        elif current != url:
            await self.run("remote", "set-url", name, url)

    # ==================== Refs ====================

    async def has_commits(self) -> bool:
        return (await self.run("rev-parse", "--verify", "--quiet", "HEAD", check=False)).ok

    async def head(self) -> str | None:
        result = await self.run("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        return result.stdout.strip() if result.ok else None

    async def rev_parse(self, ref: str) -> str | None:
        result = await self.run("rev-parse", "--verify", "--quiet", ref, check=False)
        return result.stdout.strip() if result.ok else None

    async def current_branch(self) -> str | None:
        result = await self.run("symbolic-ref", "--short", "HEAD", check=False)
        return result.stdout.strip() if result.ok else None

    async def has_ref(self, ref: str) -> bool:
        return (await self.run("show-ref", "--verify", "--quiet", ref, check=False)).ok

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """True when ``ancestor`` is reachable from ``descendant``."""
        result = await self.run("merge-base", "--is-ancestor", ancestor, descendant, check=False)
        return result.ok

    async def checkout_branch(self, branch: str, remote: str = "origin") -> None:
        """Check out ``branch``, creating it (tracking the remote one if present)."""
        if await self.current_branch() == branch and await self.has_commits():
            return
        if await self.has_ref(f"refs/heads/{branch}"):
            await self.run("checkout", branch)
        elif await self.has_ref(f"refs/remotes/{remote}/{branch}"):
            await self.run("checkout", "-B", branch, "--track", f"{remote}/{branch}")
        elif await self.has_commits():
            await self.run("checkout", "-b", branch)
        else:
            await self.run("symbolic-ref", "HEAD", f"refs/heads/{branch}")

    # ==================== Working tree ====================

    async def add_all(self) -> None:
        await self.run("add", "-A")

    async def has_staged_changes(self) -> bool:
        # exit code 1 means differences exist
        result = await self.run("diff", "--cached", "--quiet", check=False)
        return result.returncode == 1

    async def commit(self, message: str) -> str | None:
        """Stage everything and commit; returns the new HEAD or None if clean."""
        await self.add_all()
        if await self.has_commits() and not await self.has_staged_changes():
            return None
        await self.run("commit", "--no-verify", "--allow-empty-message", "-m", message)
        return await self.head()

    async def discard_changes(self) -> None:
        """Drop uncommitted and untracked files in the working tree."""
        await self.run("reset", "--hard", "--quiet", "HEAD")
        await self.run("clean", "-fd", "--quiet")

    async def unmerged_paths(self) -> list[str]:
        out = await self.output("diff", "--name-only", "--diff-filter=U")
        return [line for line in out.splitlines() if line]

    async def path_in_ref(self, ref: str, path: str) -> bool:
        return (await self.run("cat-file", "-e", f"{ref}:{path}", check=False)).ok

    async def show_file(self, ref: str, path: str) -> str | None:
        result = await self.run("show", f"{ref}:{path}", check=False)
        return result.stdout if result.ok else None

    # ==================== Remote ====================

    async def remote_has_branch(self, branch: str, remote: str = "origin") -> bool:
        """Ask the remote whether ``branch`` exists; raises GitError if unreachable."""
        out = await self.output("ls-remote", "--heads", remote, branch)
        return bool(out)

    async def fetch(self, branch: str, remote: str = "origin") -> None:
        await self.run(
            "fetch", remote, f"+refs/heads/{branch}:refs/remotes/{remote}/{branch}"
        )

    async def push(self, branch: str, remote: str = "origin") -> None:
        await self.run("push", "--porcelain", remote, f"HEAD:refs/heads/{branch}")

    async def unpushed_count(self, branch: str, remote: str = "origin") -> int:
        """Commits on HEAD not yet on the remote-tracking branch."""
        tracking = f"refs/remotes/{remote}/{branch}"
        if not await self.has_ref(tracking):
            return int(await self.output("rev-list", "--count", "HEAD"))
        return int(await self.output("rev-list", "--count", f"{tracking}..HEAD"))

    async def merge_ff_only(self, ref: str) -> None:
        await self.run("merge", "--ff-only", ref)

    async def merge_no_commit(self, ref: str) -> GitResult:
        """Start a merge that prefers our side on conflicting hunks."""
        return await self.run(
            "merge",
            "--no-commit",
            "--no-ff",
            "--allow-unrelated-histories",
            "-X",
            "ours",
            ref,
            check=False,
        )

    async def abort_merge(self) -> None:
        await self.run("merge", "--abort", check=False)

    async def checkout_paths(self, ref: str, *paths: str) -> None:
        await self.run("checkout", ref, "--", *paths)
