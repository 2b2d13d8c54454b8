from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path

from taskforge.errors import GitError
from taskforge.manifest import build_task_slug

logger = logging.getLogger(__name__)

INTERNAL_PATH_PREFIXES = (".taskforge/", ".git/")
INTERNAL_FILES = {"taskforge.toml"}


def is_internal_path(path: str) -> bool:
    normalized = path.replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    if normalized in INTERNAL_FILES or normalized.rstrip("/") == ".taskforge":
        return True
    return normalized.startswith(INTERNAL_PATH_PREFIXES)


def _status_line_path(status_line: str) -> str:
    candidate = status_line[3:].strip()
    if " -> " in candidate:
        candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
    if candidate.startswith('"') and candidate.endswith('"'):
        candidate = candidate[1:-1]
    return candidate


def build_task_branch_name(prefix: str, task_id: str, task_name: str) -> str:
    safe_id = re.sub(r"[^A-Za-z0-9._-]+", "-", task_id.strip()).strip("-") or "task"
    return f"{prefix}{safe_id}-{build_task_slug(task_name)}"


class GitRepository:
    """Thin wrapper over the git command line for one checkout."""

    def __init__(self, repo_root: Path, *, branch_prefix: str = "agent/") -> None:
        self.repo_root = repo_root.resolve()
        self.branch_prefix = branch_prefix

    def run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise GitError("git executable not found.") from exc
        if check and proc.returncode != 0:
            detail = proc.stderr.strip() or proc.stdout.strip()
            raise GitError(f"git {' '.join(args[:2])} failed: {detail}")
        return proc

    def changed_paths(
        self, *, include_internal: bool = False, include_untracked: bool = True
    ) -> list[str]:
        untracked_mode = "all" if include_untracked else "no"
        proc = self.run_git(["status", "--porcelain", f"--untracked-files={untracked_mode}"])
        paths: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            path = _status_line_path(line)
            if not path:
                continue
            if not include_internal and is_internal_path(path):
                continue
            paths.append(path)
        return sorted(set(paths))

    def ensure_clean_working_tree(self) -> None:
        dirty = self.changed_paths(include_untracked=False)
        if dirty:
            details = "\n".join(dirty[:20])
            raise GitError(
                "Working tree has uncommitted changes. Commit or stash them first.\n"
                f"Detected:\n{details}"
            )

    def current_branch(self) -> str:
        return self.run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def branch_exists(self, branch: str) -> bool:
        proc = self.run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return proc.returncode == 0

    def checkout(self, branch: str) -> None:
        self.run_git(["checkout", branch])

    def checkout_new_branch(self, branch: str, start_point: str) -> None:
        self.run_git(["checkout", "-b", branch, start_point])

    def reset_branch(self, branch: str, start_point: str) -> None:
        self.run_git(["checkout", "-B", branch, start_point])

    def delete_branch(self, branch: str, *, force: bool = True) -> None:
        self.run_git(["branch", "-D" if force else "-d", branch])

    def head_sha(self, ref: str = "HEAD") -> str:
        return self.run_git(["rev-parse", "--verify", f"{ref}^{{commit}}"]).stdout.strip()

    def resolve_run_base_sha(self, main_branch: str) -> str:
        return self.head_sha(main_branch)

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        proc = self.run_git(["merge-base", "--is-ancestor", ancestor, descendant], check=False)
        if proc.returncode == 0:
            return True
        if proc.returncode == 1:
            return False
        raise GitError(proc.stderr.strip() or f"Could not compare {ancestor} and {descendant}.")

    def merge_in_progress(self) -> bool:
        proc = self.run_git(["rev-parse", "-q", "--verify", "MERGE_HEAD"], check=False)
        return proc.returncode == 0

    def add_remote(self, name: str, url: str) -> None:
        self.run_git(["remote", "add", name, url])

    def remove_remote(self, name: str) -> None:
        proc = self.run_git(["remote"], check=True)
        if name in proc.stdout.split():
            self.run_git(["remote", "remove", name])

    def fetch(self, remote: str, ref: str) -> None:
        self.run_git(["fetch", "--no-tags", remote, ref])

    def list_changed_files(self, base_ref: str) -> list[str]:
        committed = self.run_git(["diff", "--name-only", base_ref, "--"]).stdout.splitlines()
        untracked = self.run_git(
            ["ls-files", "--others", "--exclude-standard"]
        ).stdout.splitlines()
        paths = {path.strip() for path in [*committed, *untracked] if path.strip()}
        return sorted(path for path in paths if not is_internal_path(path))

    def build_task_branch_name(self, task_id: str, task_name: str) -> str:
        return build_task_branch_name(self.branch_prefix, task_id, task_name)

    # Working-copy operations used inside task workspaces.

    def config_value(self, key: str) -> str:
        proc = self.run_git(["config", "--get", key], check=False)
        return proc.stdout.strip() if proc.returncode == 0 else ""

    def ensure_identity(self, name: str = "taskforge", email: str = "taskforge@localhost") -> None:
        if not self.config_value("user.name"):
            self.run_git(["config", "user.name", name])
        if not self.config_value("user.email"):
            self.run_git(["config", "user.email", email])

    def ensure_excluded(self, pattern: str) -> None:
        git_dir = Path(self.run_git(["rev-parse", "--git-dir"]).stdout.strip())
        if not git_dir.is_absolute():
            git_dir = self.repo_root / git_dir
        exclude_file = git_dir / "info" / "exclude"
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        existing = exclude_file.read_text(encoding="utf-8") if exclude_file.exists() else ""
        if pattern in existing.splitlines():
            return
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        exclude_file.write_text(f"{existing}{prefix}{pattern}\n", encoding="utf-8")

    def stage_all(self) -> None:
        self.run_git(["add", "-A"])

    def has_staged_changes(self) -> bool:
        proc = self.run_git(["diff", "--cached", "--quiet"], check=False)
        return proc.returncode == 1

    def commit(self, message: str, *, amend: bool = False) -> str:
        args = ["commit", "--no-verify", "-m", message]
        if amend:
            args.insert(1, "--amend")
        self.run_git(args)
        return self.head_sha()

    def head_message(self) -> str:
        proc = self.run_git(["log", "-1", "--pretty=%B"], check=False)
        return proc.stdout.strip() if proc.returncode == 0 else ""

    def has_commits(self) -> bool:
        return self.run_git(["rev-parse", "--verify", "HEAD"], check=False).returncode == 0

    def revert_paths(self, paths: list[str]) -> None:
        if not paths:
            return
        in_head: set[str] = set()
        if self.has_commits():
            in_head = set(
                self.run_git(
                    ["ls-tree", "-r", "--name-only", "HEAD", "--", *paths]
                ).stdout.splitlines()
            )
        indexed = set(self.run_git(["ls-files", "--", *paths]).stdout.splitlines())
        restore_paths = [path for path in paths if path in in_head]
        unstage_paths = [path for path in paths if path in indexed and path not in in_head]
        remove_paths = [path for path in paths if path not in in_head]
        if restore_paths:
            self.run_git(
                ["restore", "--source=HEAD", "--staged", "--worktree", "--", *restore_paths]
            )
        if unstage_paths:
            self.run_git(["rm", "--cached", "-f", "-q", "--", *unstage_paths])
        if remove_paths:
            self.run_git(["clean", "-fdq", "--", *remove_paths])
        logger.debug("Reverted %d path(s) in %s", len(paths), self.repo_root)

    def clone_to(self, destination: Path) -> GitRepository:
        destination.parent.mkdir(parents=True, exist_ok=True)
        proc = subprocess.run(
            ["git", "clone", "--quiet", str(self.repo_root), str(destination)],
            text=True,
            capture_output=True,
        )
        if proc.returncode != 0:
            raise GitError(f"git clone failed: {proc.stderr.strip() or proc.stdout.strip()}")
        return GitRepository(destination, branch_prefix=self.branch_prefix)
