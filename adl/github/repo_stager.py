# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - REPOSITORY STAGER
# =============================================================================
"""
Repository Stager

Checks out a shallow, branch-pinned working copy of the target repository
so the LLM tool can read the code it is reasoning about.

Every staged copy lives in a fresh temporary directory and must be released
by the caller on every exit path. ``staged()`` wraps stage/release in an
async context manager for that purpose.

Usage:
    stager = RepoStager(token="ghp_xxx")
    async with stager.staged("owner", "repo", "main") as path:
        ...
"""

import asyncio
import logging
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from adl.errors import StagingError

logger = logging.getLogger(__name__)


class RepoStager:
    """Shallow single-branch clones into temporary directories."""

    TEMP_PREFIX = "adl-repo-"

    def __init__(
        self,
        token: Optional[str] = None,
        git_binary: str = "git",
        host: str = "github.com",
        base_dir: Optional[str] = None,
    ):
        self.token = token
        self.git_binary = git_binary
        self.host = host
        self.base_dir = base_dir

    def clone_url(self, owner: str, repo: str, token: Optional[str] = None) -> str:
        token = token if token is not None else self.token
        if token:
            return f"https://x-access-token:{token}@{self.host}/{owner}/{repo}.git"
        return f"https://{self.host}/{owner}/{repo}.git"

    def _redact(self, text: str, token: Optional[str]) -> str:
        if token:
            return text.replace(token, "***")
        return text

    async def stage(
        self,
        owner: str,
        repo: str,
        branch: str,
        token: Optional[str] = None,
    ) -> str:
        """
        Clone ``owner/repo`` at ``branch`` into a new temporary directory.

        Returns:
            Path of the working copy

        Raises:
            StagingError: If git fails; the partial directory is removed
        """
        token = token if token is not None else self.token
        path = tempfile.mkdtemp(prefix=self.TEMP_PREFIX, dir=self.base_dir)

        cmd = [
            self.git_binary, "clone",
            "--depth", "1",
            "--single-branch",
            "--branch", branch,
            self.clone_url(owner, repo, token),
            path,
        ]

        logger.info(f"Staging {owner}/{repo}@{branch} into {path}")

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
            _, stderr = await process.communicate()
        except OSError as e:
            self.release(path)
            raise StagingError(f"Failed to run {self.git_binary}: {e}")
        except BaseException:
            if process is not None and process.returncode is None:
                process.kill()
            self.release(path)
            raise

        if process.returncode != 0:
            self.release(path)
            message = self._redact(stderr.decode("utf-8", errors="replace").strip(), token)
            raise StagingError(
                f"git clone of {owner}/{repo}@{branch} failed "
                f"(exit {process.returncode}): {message}"
            )

        return path

    def release(self, path: Optional[str]) -> None:
        """Remove a staged copy. Missing paths are ignored."""
        if not path:
            return
        if not Path(path).exists():
            return
        shutil.rmtree(path, ignore_errors=True)
        logger.debug(f"Released staged repository {path}")

    @asynccontextmanager
    async def staged(
        self,
        owner: str,
        repo: str,
        branch: str,
        token: Optional[str] = None,
    ) -> AsyncIterator[str]:
        path = await self.stage(owner, repo, branch, token)
        try:
            yield path
        finally:
            self.release(path)


__all__ = ["RepoStager"]
