"""Git source fetcher for profile dependencies."""

import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from git import Git, Repo
from git.exc import BadName, BadObject, GitCommandError

from ..errors import FetchFailed, UnresolvableSource
from ..models.source import COMMIT_PATTERN, SourceDescriptor
from ..utils.helpers import compute_digest
from .cache_store import CacheEntry, CacheStore

logger = logging.getLogger(__name__)

SHORT_COMMIT_PATTERN = re.compile(r'^[0-9a-f]{7,39}$')

# git's wording for a repository that is not there
MISSING_REPOSITORY_MARKERS = ("not found", "does not exist", "does not appear to be a git repository")


class GitDownloader:
    """Clones git sources into the cache, keyed by the resolved commit."""

    def __init__(self, timeout: int = 60):
        """Initialize the git downloader.

        Args:
            timeout: Seconds after which a stalled transfer is aborted
        """
        self.timeout = timeout
        self.git_env = self._setup_git_environment()

    def _setup_git_environment(self) -> Dict[str, Any]:
        """Set up a non-interactive environment for git operations.

        Returns:
            Dict containing environment variables for Git operations
        """
        env = os.environ.copy()
        env['GIT_TERMINAL_PROMPT'] = '0'
        env['GIT_ASKPASS'] = 'echo'  # Prevent interactive credential prompts
        env['GIT_CONFIG_NOSYSTEM'] = '1'
        # Abort transfers slower than 1 byte/s for `timeout` seconds
        env['GIT_HTTP_LOW_SPEED_LIMIT'] = '1'
        env['GIT_HTTP_LOW_SPEED_TIME'] = str(self.timeout)
        return env

    def _sanitize_git_error(self, error_message: str) -> str:
        """Sanitize Git error messages to remove credentials embedded in URLs.

        Args:
            error_message: Raw error message from Git operations

        Returns:
            str: Sanitized error message with sensitive data removed
        """
        sanitized = re.sub(r'(\w+://)[^@/\s]+@', r'\1***@', error_message)
        sanitized = re.sub(r'(ghp_|gho_|ghu_|ghs_|ghr_|glpat-)[a-zA-Z0-9_-]+', '***', sanitized)
        return sanitized

    def resolve_commit(self, descriptor: SourceDescriptor) -> Optional[str]:
        """Resolve a descriptor's ref to a commit without cloning.

        Full commit ids are returned as-is. Symbolic refs are looked up with
        ``git ls-remote``. Abbreviated commit ids cannot be resolved remotely,
        so None is returned and the caller must clone first.

        Args:
            descriptor: Git source descriptor

        Returns:
            Optional[str]: Full commit id, or None for an abbreviated commit

        Raises:
            FetchFailed: If the remote cannot be contacted
            UnresolvableSource: If the ref does not exist on the remote
        """
        ref = descriptor.ref
        if ref and COMMIT_PATTERN.match(ref.lower()):
            return ref.lower()

        git_cmd = Git()
        git_cmd.update_environment(**self.git_env)
        try:
            output = git_cmd.ls_remote(descriptor.locator, kill_after_timeout=self.timeout)
        except GitCommandError as e:
            sanitized_error = self._sanitize_git_error(str(e))
            if _is_missing_repository(sanitized_error):
                raise UnresolvableSource(
                    f"Repository {descriptor.locator} not found: {sanitized_error}",
                    descriptor=descriptor,
                ) from e
            raise FetchFailed(
                f"Failed to query repository {descriptor.locator}: {sanitized_error}",
                descriptor=descriptor,
            ) from e

        commit = self._match_ref(self._parse_ls_remote(output), ref)
        if commit:
            logger.debug("Resolved %s to %s", descriptor, commit)
            return commit
        if ref and SHORT_COMMIT_PATTERN.match(ref.lower()):
            return None
        raise UnresolvableSource(
            f"Reference '{ref or 'HEAD'}' not found in repository {descriptor.locator}",
            descriptor=descriptor,
        )

    @staticmethod
    def _parse_ls_remote(output: str) -> List[Tuple[str, str]]:
        refs = []
        for line in output.splitlines():
            parts = line.strip().split()
            if len(parts) == 2:
                refs.append((parts[0], parts[1]))
        return refs

    @staticmethod
    def _match_ref(refs: List[Tuple[str, str]], ref: Optional[str]) -> Optional[str]:
        """Pick the commit for ``ref`` from ls-remote output.

        Peeled tags (``^{}``) take precedence so annotated tags resolve to the
        commit rather than the tag object.
        """
        table = dict((name, sha) for sha, name in refs)
        if not ref:
            return table.get("HEAD")
        candidates = [
            f"refs/tags/{ref}^{{}}",
            f"refs/tags/{ref}",
            f"refs/heads/{ref}",
            f"{ref}^{{}}",
            ref,
        ]
        for candidate in candidates:
            if candidate in table:
                return table[candidate]
        return None

    def fetch(self, descriptor: SourceDescriptor, cache: CacheStore,
              pin: Optional[str] = None) -> Tuple[SourceDescriptor, CacheEntry, bool]:
        """Make the commit of a git source available in the cache.

        Args:
            descriptor: Git source descriptor as declared
            cache: Cache Store to consult and populate
            pin: Commit to use instead of resolving a symbolic ref

        Returns:
            Tuple of (pinned descriptor, cache entry, created) where
            ``created`` is True when a clone happened in this call.
        """
        commit = pin.lower() if pin else self.resolve_commit(descriptor)

        if commit is None:
            return self._fetch_abbreviated(descriptor, cache)

        pinned = descriptor.pinned(commit)
        entry, created = cache.get_or_create(
            pinned.key,
            lambda staging: self._produce(descriptor, commit, staging),
        )
        return pinned, entry, created

    def _fetch_abbreviated(self, descriptor: SourceDescriptor,
                           cache: CacheStore) -> Tuple[SourceDescriptor, CacheEntry, bool]:
        temp_dir = Path(tempfile.mkdtemp(prefix="pvendor-git-"))
        try:
            target = temp_dir / "checkout"
            repo = self._clone(descriptor, target)
            try:
                commit = repo.commit(descriptor.ref).hexsha
            except (BadName, BadObject, GitCommandError, ValueError) as e:
                repo.close()
                raise UnresolvableSource(
                    f"Could not resolve commit '{descriptor.ref}' in repository {descriptor.locator}",
                    descriptor=descriptor,
                ) from e
            pinned = descriptor.pinned(commit)
            existing = cache.get(pinned.key)
            if existing is not None:
                repo.close()
                return pinned, existing, False
            self._checkout(repo, descriptor, commit)
            entry = cache.put(pinned.key, target, resolved_ref=commit, content_digest=compute_digest(target))
            return pinned, entry, True
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def _produce(self, descriptor: SourceDescriptor, commit: str,
                 staging: Path) -> Tuple[Path, Optional[str], str]:
        target = staging / "checkout"
        repo = self._clone(descriptor, target)
        self._checkout(repo, descriptor, commit)
        return target, commit, compute_digest(target)

    def _clone(self, descriptor: SourceDescriptor, target: Path) -> Repo:
        logger.debug("Cloning %s into %s", descriptor.locator, target)
        try:
            return Repo.clone_from(
                descriptor.locator,
                target,
                env=self.git_env,
                no_checkout=True,
            )
        except GitCommandError as e:
            sanitized_error = self._sanitize_git_error(str(e))
            if _is_missing_repository(sanitized_error):
                raise UnresolvableSource(
                    f"Repository {descriptor.locator} not found: {sanitized_error}",
                    descriptor=descriptor,
                ) from e
            raise FetchFailed(
                f"Failed to clone repository {descriptor.locator}: {sanitized_error}",
                descriptor=descriptor,
            ) from e

    def _checkout(self, repo: Repo, descriptor: SourceDescriptor, commit: str) -> None:
        """Check out ``commit`` and strip the repository metadata."""
        target = Path(repo.working_tree_dir)
        try:
            repo.git.checkout(commit, force=True)
        except GitCommandError as e:
            sanitized_error = self._sanitize_git_error(str(e))
            raise UnresolvableSource(
                f"Commit {commit} not found in repository {descriptor.locator}: {sanitized_error}",
                descriptor=descriptor,
            ) from e
        finally:
            repo.close()

        # Remove .git directory so the checkout is plain content
        git_dir = target / ".git"
        if git_dir.exists():
            shutil.rmtree(git_dir, ignore_errors=True)


def _is_missing_repository(error_message: str) -> bool:
    lowered = error_message.lower()
    return any(marker in lowered for marker in MISSING_REPOSITORY_MARKERS)
