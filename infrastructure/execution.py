"""
FOREMAN EXECUTION - The Source-Control Execution Adapter

Translates an approved Task + Patch into host-side state changes.

Every operation is idempotent by checking host state first:
- ensure_repository: GET the repo, create it only on 404
- ensure_branch_from: existing branch -> no-op, else branch off the base head SHA
- upsert_file: read current SHA, write with it; identical content -> no write
- open_pull_request: reuse the first open PR for owner:head -> base, else create

Nothing is cached between calls: every decision re-reads live host state,
so re-running a partially failed run is safe.

CI gating:
    wait_for_green polls the PR's mergeable_state and the head commit's
    check-runs with tenacity (fixed interval, or exponential when
    poll_backoff > 1). It returns False after the last attempt; it never
    raises for "not green yet".
"""
import base64
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from tenacity import (
    Retrying,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from core.schemas import MergeResult, Patch, Task, Verdict
from infrastructure.config import Settings
from infrastructure.github_client import GitHubAPIError, GitHubClient
from infrastructure import scaffold

logger = logging.getLogger(__name__)

MAX_POLL_WAIT = 60.0


class ExecutionError(Exception):
    """Host state does not allow the requested operation (e.g. base branch missing)."""
    pass


def _encode(content: str) -> str:
    return base64.b64encode(content.encode("utf-8")).decode("ascii")


def _decode(encoded: str) -> Optional[str]:
    """Decode a contents-API payload; None when the blob is not UTF-8 text."""
    # The contents API wraps base64 at 60 columns; b64decode discards the newlines
    try:
        return base64.b64decode(encoded or "").decode("utf-8")
    except UnicodeDecodeError:
        return None


class ExecutionAdapter:
    """
    Sequences GitHub operations for one owner.

    Polling parameters default to 20 attempts, 5 seconds apart. `sleep` is
    the function tenacity waits with, replaceable in tests.
    """

    def __init__(
        self,
        client: GitHubClient,
        default_branch: str = "main",
        required_checks: Iterable[str] = ("build",),
        poll_attempts: int = 20,
        poll_interval: float = 5.0,
        poll_backoff: float = 1.0,
        merge_method: str = "squash",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.default_branch = default_branch
        self.required_checks = list(required_checks)
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.poll_backoff = poll_backoff
        self.merge_method = merge_method
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[GitHubClient] = None, **kwargs) -> "ExecutionAdapter":
        return cls(
            client=client or GitHubClient.from_settings(settings.github),
            default_branch=settings.github.default_branch,
            required_checks=settings.github.required_checks,
            poll_attempts=settings.execution.poll_attempts,
            poll_interval=settings.execution.poll_interval,
            poll_backoff=settings.execution.poll_backoff,
            merge_method=settings.execution.merge_method,
            **kwargs,
        )

    @property
    def owner(self) -> str:
        return self.client.owner

    def live_url(self, repo: str) -> str:
        return f"https://{self.owner}.github.io/{repo}/"

    # =========================================================================
    # REPOSITORY
    # =========================================================================

    def ensure_repository(self, name: str, description: str = "") -> Dict[str, Any]:
        """Return the repository, creating it (auto-initialised) when absent."""
        existing = self.client.get_repository(name)
        if existing is not None:
            logger.info(f"Reusing existing repository {self.owner}/{name}")
            return existing
        logger.info(f"Creating repository {self.owner}/{name}")
        return self.client.create_repository(name, description)

    def protect_main_branch(self, repo: str) -> None:
        """Require the configured status checks on the default branch. Safe to re-apply."""
        self.client.protect_branch(repo, self.default_branch, self.required_checks)
        logger.info(f"Protected {repo}:{self.default_branch} (checks: {', '.join(self.required_checks)})")

    def enable_pages(self, repo: str) -> bool:
        """Best-effort Pages activation. Host errors are logged, not raised."""
        try:
            self.client.create_pages_site(repo, self.default_branch)
            return True
        except GitHubAPIError as e:
            # Pages may already be enabled or still pending
            logger.info(f"Pages not enabled for {repo}: {e}")
            return False

    # =========================================================================
    # BRANCHES AND FILES
    # =========================================================================

    def ensure_branch_from(self, repo: str, base: str, new: str) -> bool:
        """
        Create `new` at `base`'s head commit unless it already exists.

        Returns:
            True if the branch was created, False if it already existed

        Raises:
            ExecutionError: If `base` does not exist
        """
        if self.client.get_ref(repo, new) is not None:
            logger.debug(f"Branch {new} already exists in {repo}")
            return False

        base_ref = self.client.get_ref(repo, base)
        if base_ref is None:
            raise ExecutionError(f"Base branch {base} not found in {self.owner}/{repo}")

        self.client.create_ref(repo, new, base_ref["object"]["sha"])
        logger.info(f"Created branch {new} from {base} in {repo}")
        return True

    def read_file(self, repo: str, branch: str, path: str) -> Optional[str]:
        """Text content of `path`, or None when it is missing or binary."""
        existing = self.client.get_file(repo, path, branch)
        if existing is None:
            return None
        return _decode(existing.get("content", ""))

    def upsert_file(
        self,
        repo: str,
        branch: str,
        path: str,
        content: str,
        message: str,
    ) -> Optional[Dict[str, Any]]:
        """
        Create or update one file, passing the current blob SHA as precondition.

        Returns:
            The host's response, or None when the content was already identical
        """
        existing = self.client.get_file(repo, path, branch)
        sha = None
        if existing is not None:
            if _decode(existing.get("content", "")) == content:
                logger.debug(f"{repo}:{branch}:{path} unchanged; skipping write")
                return None
            sha = existing.get("sha")

        return self.client.put_file(repo, path, _encode(content), message, branch, sha=sha)

    def append_readme_link(self, repo: str, branch: str, link: str) -> None:
        current = self.read_file(repo, branch, "README.md")
        updated = scaffold.readme_with_link(repo, current, link)
        self.upsert_file(repo, branch, "README.md", updated, "Update README task links")

    # =========================================================================
    # PULL REQUESTS
    # =========================================================================

    def open_pull_request(self, repo: str, head: str, base: str, title: str, body: str) -> Dict[str, Any]:
        """Reuse the first open PR for head -> base, or create one."""
        existing = self.client.list_open_pulls(repo, head, base)
        if existing:
            pr = existing[0]
            logger.info(f"Reusing PR #{pr['number']} for {head} -> {base}")
            return pr

        pr = self.client.create_pull(repo, head, base, title, body)
        logger.info(f"Opened PR #{pr['number']} for {head} -> {base}")
        return pr

    def _is_green(self, repo: str, pr_number: int) -> bool:
        pr = self.client.get_pull(repo, pr_number)
        if pr.get("mergeable_state") != "clean":
            return False

        check_runs = self.client.list_check_runs(repo, pr["head"]["sha"])
        if not check_runs:
            return False
        return all(run.get("conclusion") == "success" for run in check_runs)

    def wait_for_green(
        self,
        repo: str,
        pr_number: int,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> bool:
        """
        Poll until the PR is mergeable and every check-run succeeded.

        Green requires mergeable_state == "clean", at least one check-run,
        and all conclusions == "success". Host errors propagate.
        """
        attempts = max_attempts if max_attempts is not None else self.poll_attempts
        interval = interval if interval is not None else self.poll_interval

        if self.poll_backoff > 1:
            wait = wait_exponential(multiplier=interval, exp_base=self.poll_backoff, max=MAX_POLL_WAIT)
        else:
            wait = wait_fixed(interval)

        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait,
            retry=retry_if_result(lambda green: not green),
            retry_error_callback=lambda retry_state: False,
            sleep=self._sleep,
            reraise=True,
        )
        green = retrying(self._is_green, repo, pr_number)
        if not green:
            logger.warning(f"PR #{pr_number} in {repo} not green after {attempts} attempts")
        return green

    def merge_if_green(self, repo: str, pr_number: int) -> MergeResult:
        if not self.wait_for_green(repo, pr_number):
            return MergeResult(merged=False, reason="CI not green")

        response = self.client.merge_pull(repo, pr_number, self.merge_method)
        logger.info(f"Merged PR #{pr_number} in {repo} ({self.merge_method})")
        return MergeResult(merged=True, sha=response.get("sha"))

    # =========================================================================
    # COMPOSITE OPERATIONS
    # =========================================================================

    def apply_patch(self, repo: str, task: Task, patch: Patch, verdict: Verdict) -> Dict[str, Any]:
        """
        Push a task's patch, README link and verifier artifacts to its branch and open the PR.

        Returns:
            The (created or reused) pull request
        """
        self.ensure_branch_from(repo, self.default_branch, patch.branch)

        for commit in patch.commits:
            for change in commit.files:
                self.upsert_file(repo, patch.branch, change.path, change.content, commit.message)

        if patch.readme_append:
            self.append_readme_link(repo, patch.branch, patch.readme_append)

        for artifact in verdict.test_files:
            self.upsert_file(
                repo,
                patch.branch,
                artifact.path,
                artifact.content,
                f"Add verifier test artifact for {task.id}",
            )

        return self.open_pull_request(
            repo, patch.branch, self.default_branch, patch.pr.title, patch.pr.body
        )

    def bootstrap_repository(
        self,
        repo: str,
        objective: str,
        tasks: List[Task],
        enable_pages: bool,
    ) -> None:
        """Write the landing page and workflows to the default branch."""
        for change in scaffold.bootstrap_files(objective, tasks, enable_pages):
            self.upsert_file(
                repo,
                self.default_branch,
                change.path,
                change.content,
                scaffold.BOOTSTRAP_MESSAGES[change.path],
            )
