import logging
import os
import shutil
import tempfile
from pathlib import Path

from patchseries.util.process import run_command

logger = logging.getLogger(__name__)

DIFF_ARGS = [
    "diff",
    "--cached",
    "--no-color",
    "--ignore-space-at-eol",
    "--no-ext-diff",
    "--src-prefix=a/",
    "--dst-prefix=b/",
]


def _clear_worktree(repo_dir: Path) -> None:
    for entry in repo_dir.iterdir():
        if entry.name == ".git":
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


class GitDiffProducer:
    """
    Produce a unified diff between two directory snapshots with a throwaway
    git repository: the clean snapshot is committed, the modified snapshot is
    staged on top, and the staged diff is returned.
    """

    def __init__(self, timeout_sec: int = 120):
        self.timeout_sec = timeout_sec

    def diff(self, clean_root: Path, modified_root: Path) -> str:
        with tempfile.TemporaryDirectory(prefix="patch-series-git-") as tmp:
            repo_dir = Path(tmp, "repo")
            shutil.copytree(clean_root, repo_dir, symlinks=True)

            # an empty HOME keeps the user's git config out of the diff
            env = {**os.environ, "HOME": tmp, "GIT_CONFIG_NOSYSTEM": "1"}

            def git(cmd_name: str, *args: str) -> str:
                result = run_command(
                    cmd_name=cmd_name,
                    cmd=["git", *args],
                    timeout=self.timeout_sec,
                    cwd=repo_dir,
                    env=env,
                )
                return result.stdout

            git("git_init", "init", "-q")
            git("git_config_name", "config", "--local", "user.name", "patch-series")
            git("git_config_email", "config", "--local", "user.email", "patch-series@localhost")
            git("git_config_autocrlf", "config", "--local", "core.autocrlf", "false")
            git("git_add_clean", "add", "-f", ".")
            git("git_commit_clean", "commit", "--allow-empty", "-q", "-m", "init")

            _clear_worktree(repo_dir)
            shutil.copytree(modified_root, repo_dir, symlinks=True, dirs_exist_ok=True)

            git("git_add_modified", "add", "-A", "-f", ".")
            diff_text = git("git_diff", *DIFF_ARGS)

        logger.debug("git diff produced %d bytes", len(diff_text))
        return diff_text
