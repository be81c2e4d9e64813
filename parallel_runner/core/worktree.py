"""Git worktree and branch management for agent isolation.

Each agent works in its own worktree on its own branch, created from the
session's base commit. The primary checkout is never modified: worktrees
live under ``<repo>/.parallel-worktrees/<session_id>/<slug>`` and that
directory is listed in ``.git/info/exclude``.
"""

import logging
import shutil
import subprocess
import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from parallel_runner.core.utils import RetryPolicy, call_with_retry, slugify

logger = logging.getLogger(__name__)

# stderr fragments git prints when another process holds a lock
_TRANSIENT_MARKERS = (
    "index.lock",
    "cannot lock ref",
    "could not lock",
    "unable to create",
    "file exists",
    "another git process",
)


class VCSError(Exception):
    """A git worktree or branch operation failed.

    ``retryable`` is True for lock contention and timeouts, False for
    missing repositories, unresolvable commits and name collisions.
    """

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


@dataclass
class WorktreeInfo:
    """One entry of ``git worktree list --porcelain``."""

    path: Path
    branch: str | None = None


def _is_transient(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _TRANSIENT_MARKERS)


class WorktreeManager:
    """Create and destroy per-agent git worktrees and branches.

    Ref-mutating commands are serialized per repository through a file lock
    kept in the git common dir, so concurrent calls from threads or other
    processes block instead of tripping over ``index.lock``. Lock contention
    that still surfaces from git is retried with backoff.
    """

    WORKTREES_DIR = ".parallel-worktrees"
    # Local git operations should complete quickly, but can hang on
    # corrupted repos or busy filesystems
    GIT_TIMEOUT = 30
    LOCK_FILENAME = "parallel-runner.lock"
    LOCK_TIMEOUT = 60
    STALE_GRACE_SECONDS = 300

    def __init__(
        self,
        worktrees_dir: str | None = None,
        git_timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        lock_timeout: float | None = None,
    ):
        self.worktrees_dir = worktrees_dir or self.WORKTREES_DIR
        self.git_timeout = git_timeout or self.GIT_TIMEOUT
        self.retry_policy = retry_policy or RetryPolicy()
        self.lock_timeout = lock_timeout or self.LOCK_TIMEOUT
        self._common_dirs: dict[Path, Path] = {}

    # --- git plumbing ---

    def _run_git(self, cwd: Path, args: list[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["git", *args],
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.git_timeout,
            )
        except subprocess.TimeoutExpired:
            raise VCSError(
                f"git {args[0]} timed out after {self.git_timeout}s in {cwd}",
                retryable=True,
            )
        except FileNotFoundError as e:
            raise VCSError(f"Cannot run git in {cwd}: {e}")

    def _git(self, cwd: Path, args: list[str], description: str) -> str:
        """Run git, raising VCSError on failure and retrying lock contention."""

        def attempt() -> str:
            result = self._run_git(cwd, args)
            if result.returncode != 0:
                stderr = result.stderr.strip()
                raise VCSError(f"{description} failed: {stderr}", retryable=_is_transient(stderr))
            return result.stdout

        return call_with_retry(
            attempt,
            self.retry_policy,
            lambda e: isinstance(e, VCSError) and e.retryable,
            description=description,
        )

    def _repo_path(self, repo_id: str | Path) -> Path:
        repo = Path(repo_id)
        if not repo.is_dir():
            raise VCSError(f"Repository not found: {repo}")
        return repo

    def _common_dir(self, repo: Path) -> Path:
        if repo not in self._common_dirs:
            out = self._git(repo, ["rev-parse", "--git-common-dir"], "Locating git dir").strip()
            common = Path(out)
            if not common.is_absolute():
                common = (repo / common).resolve()
            self._common_dirs[repo] = common
        return self._common_dirs[repo]

    @contextmanager
    def _repo_lock(self, repo: Path) -> Generator[None, None, None]:
        lock = FileLock(str(self._common_dir(repo) / self.LOCK_FILENAME), timeout=self.lock_timeout)
        try:
            lock.acquire()
        except FileLockTimeout:
            raise VCSError(
                f"Timed out after {self.lock_timeout}s waiting for repository lock on {repo}",
                retryable=True,
            )
        try:
            yield
        finally:
            lock.release()

    # --- queries ---

    def resolve_repo(self, path: str | Path) -> str:
        """Return the canonical top-level path used as ``repo_id``."""
        candidate = Path(path)
        if not candidate.exists():
            raise VCSError(f"Repository path does not exist: {candidate}")
        result = self._run_git(candidate, ["rev-parse", "--show-toplevel"])
        if result.returncode != 0:
            raise VCSError(f"Not a git repository: {candidate}")
        return str(Path(result.stdout.strip()).resolve())

    def current_branch(self, repo_id: str) -> str:
        repo = self._repo_path(repo_id)
        result = self._run_git(repo, ["symbolic-ref", "--quiet", "--short", "HEAD"])
        if result.returncode != 0:
            raise VCSError(f"HEAD is detached in {repo}; a base branch must be given explicitly")
        return result.stdout.strip()

    def resolve_commit(self, repo_id: str, rev: str) -> str:
        repo = self._repo_path(repo_id)
        result = self._run_git(repo, ["rev-parse", "--verify", "--quiet", f"{rev}^{{commit}}"])
        if result.returncode != 0 or not result.stdout.strip():
            raise VCSError(f"Cannot resolve commit '{rev}' in {repo}")
        return result.stdout.strip()

    def branch_exists(self, repo_id: str, branch_name: str) -> bool:
        repo = self._repo_path(repo_id)
        result = self._run_git(
            repo, ["show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}"]
        )
        return result.returncode == 0

    def list_worktrees(self, repo_id: str) -> list[WorktreeInfo]:
        """Parse ``git worktree list --porcelain`` (primary checkout first)."""
        repo = self._repo_path(repo_id)
        out = self._git(repo, ["worktree", "list", "--porcelain"], "Listing worktrees")
        worktrees: list[WorktreeInfo] = []
        current: WorktreeInfo | None = None
        for line in out.splitlines():
            if line.startswith("worktree "):
                current = WorktreeInfo(path=Path(line[9:].strip()).resolve())
                worktrees.append(current)
            elif current is not None and line.startswith("branch "):
                current.branch = line[7:].strip().removeprefix("refs/heads/")
        return worktrees

    def is_dirty(self, worktree_path: str | Path) -> bool:
        """True if the worktree has uncommitted or untracked changes."""
        out = self._git(Path(worktree_path), ["status", "--porcelain"], "Reading worktree status")
        return bool(out.strip())

    # --- paths ---

    def _worktrees_root(self, repo: Path) -> Path:
        return repo / self.worktrees_dir

    def _validate_worktrees_root(self, root: Path, repo: Path) -> None:
        """Refuse a worktrees directory that is a symlink or escapes the repo."""
        if root.is_symlink():
            raise VCSError(f"{root} is a symlink; refusing to use it for worktrees")
        if root.exists():
            try:
                root.resolve().relative_to(repo.resolve())
            except ValueError:
                raise VCSError(f"{root} resolves outside the repository")

    def _validate_worktree_path(self, repo: Path, path: Path) -> None:
        root = self._worktrees_root(repo)
        self._validate_worktrees_root(root, repo)
        try:
            path.absolute().relative_to(root.absolute())
        except ValueError:
            raise VCSError(f"Worktree path {path} is outside {root}")
        if path.absolute() == root.absolute():
            raise VCSError(f"Worktree path {path} must be below {root}")
        current = path.parent
        while current != root and current != current.parent:
            if current.is_symlink():
                raise VCSError(f"Ancestor {current} of worktree path is a symlink")
            current = current.parent

    def worktree_path_for(self, repo_id: str, session_id: str, slug: str) -> Path:
        repo = self._repo_path(repo_id)
        return self._worktrees_root(repo) / slugify(session_id) / slug

    def _ensure_excluded(self, repo: Path) -> None:
        """List the worktrees directory in info/exclude so status stays clean."""
        exclude = self._common_dir(repo) / "info" / "exclude"
        pattern = f"/{self.worktrees_dir}/"
        existing = exclude.read_text() if exclude.exists() else ""
        if pattern in existing.splitlines():
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with open(exclude, "a") as f:
            f.write(f"{prefix}{pattern}\n")

    # --- mutations ---

    def create(
        self,
        repo_id: str,
        base_commit: str,
        branch_name: str,
        worktree_path: str | Path,
    ) -> Path:
        """Create ``branch_name`` at ``base_commit`` checked out in a new worktree.

        Raises:
            VCSError: repository missing, commit unresolvable, branch or path
                already taken, or git failed.
        """
        repo = self._repo_path(repo_id)
        path = Path(worktree_path)
        self._validate_worktree_path(repo, path)
        sha = self.resolve_commit(repo_id, base_commit)

        check = self._run_git(repo, ["check-ref-format", "--branch", branch_name])
        if check.returncode != 0:
            raise VCSError(f"Invalid branch name: {branch_name}")

        with self._repo_lock(repo):
            if self.branch_exists(repo_id, branch_name):
                raise VCSError(f"Branch already exists: {branch_name}")
            if path.exists() or path.is_symlink():
                raise VCSError(f"Worktree path already exists: {path}")
            self._ensure_excluded(repo)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._git(
                repo,
                ["worktree", "add", "-b", branch_name, str(path), sha],
                f"Creating worktree {path}",
            )

        self._init_submodules(path)
        logger.info(f"Created worktree {path} on {branch_name} at {sha[:8]}")
        return path

    def _init_submodules(self, worktree_path: Path) -> None:
        if not (worktree_path / ".gitmodules").exists():
            return
        result = self._run_git(
            worktree_path,
            ["-c", "protocol.file.allow=always", "submodule", "update", "--init", "--recursive"],
        )
        if result.returncode != 0:
            logger.warning(
                f"Submodule init failed in {worktree_path}: {result.stderr.strip()}"
            )

    def remove(
        self,
        repo_id: str,
        worktree_path: str | Path,
        branch_name: str,
        keep_branch: bool,
        force: bool = True,
    ) -> None:
        """Remove a worktree directory and, unless ``keep_branch``, its branch.

        Already-removed worktrees and already-deleted branches are skipped,
        so calling this twice is the same as calling it once. Without
        ``force`` a worktree holding uncommitted changes raises VCSError.
        """
        repo = self._repo_path(repo_id)
        path = Path(worktree_path)
        self._validate_worktree_path(repo, path)

        with self._repo_lock(repo):
            if path.is_symlink():
                path.unlink()
            elif self._is_registered(repo, path):
                if not force and path.exists() and self.is_dirty(path):
                    raise VCSError(f"Worktree {path} has uncommitted changes")
                args = ["worktree", "remove", str(path)]
                if force:
                    args.append("--force")
                self._git(repo, args, f"Removing worktree {path}")
            elif path.exists():
                self._remove_safe(repo, path)

            self._git(repo, ["worktree", "prune"], "Pruning worktrees")

            if not keep_branch and self.branch_exists(repo_id, branch_name):
                self._git(repo, ["branch", "-D", branch_name], f"Deleting branch {branch_name}")

        self._remove_empty_parent(repo, path)
        logger.info(
            f"Removed worktree {path}"
            + ("" if keep_branch else f" and branch {branch_name}")
        )

    def _is_registered(self, repo: Path, path: Path) -> bool:
        target = path.resolve()
        return any(wt.path == target for wt in self.list_worktrees(str(repo)))

    def _remove_empty_parent(self, repo: Path, path: Path) -> None:
        parent = path.parent
        if parent == self._worktrees_root(repo):
            return
        try:
            parent.rmdir()
        except OSError:
            pass  # still holds sibling worktrees

    def _remove_safe(self, repo: Path, path: Path) -> None:
        """Delete a directory, unlinking symlinks instead of following them."""
        if path.is_symlink():
            path.unlink()
            return
        if not path.exists():
            return
        try:
            path.resolve().relative_to(self._worktrees_root(repo).resolve())
        except ValueError:
            raise VCSError(f"Path escapes worktrees directory at deletion time: {path}")
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()

    def prune_stale(self, repo_id: str, keep: set[str] | None = None) -> list[Path]:
        """Remove worktree directories git no longer knows about.

        Directories listed in ``keep`` and directories modified within the
        grace period (possibly being created right now) are left alone.
        Returns the removed paths.
        """
        repo = self._repo_path(repo_id)
        root = self._worktrees_root(repo)
        if not root.exists():
            return []
        self._validate_worktrees_root(root, repo)

        keep_resolved = {Path(p).resolve() for p in (keep or set())}
        removed: list[Path] = []
        with self._repo_lock(repo):
            self._git(repo, ["worktree", "prune"], "Pruning worktrees")
            active = {wt.path for wt in self.list_worktrees(repo_id)}
            now = time.time()
            for session_dir in root.iterdir():
                if session_dir.is_symlink() or not session_dir.is_dir():
                    continue
                for entry in session_dir.iterdir():
                    resolved = entry.resolve()
                    if resolved in active or resolved in keep_resolved:
                        continue
                    try:
                        if now - entry.lstat().st_mtime < self.STALE_GRACE_SECONDS:
                            continue
                    except OSError:
                        continue
                    self._remove_safe(repo, entry)
                    removed.append(entry)
                try:
                    session_dir.rmdir()
                except OSError:
                    pass

        for path in removed:
            logger.info(f"Removed stale worktree directory {path}")
        return removed
