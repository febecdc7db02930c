"""
FOREMAN GITHUB CLIENT - GitHub REST Request Helper

Thin, synchronous wrapper over the GitHub REST API. Every host call in the
system goes through GitHubClient.request, which:

- Sends the bearer token, the vnd.github+json media type and a pinned API version
- Raises GitHubAPIError on any non-2xx response (method, path, status, body)
- Returns {} for 204 No Content and empty bodies, decoded JSON otherwise

The resource helpers below map one-to-one onto REST endpoints and hold no
state; sequencing and idempotency live in infrastructure/execution.py.

Usage:
    client = GitHubClient.from_settings(settings.github)
    client.get_repository("my-repo")
    client.create_ref("my-repo", "feature/task-1", sha)
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import requests

from infrastructure.config import GitHubSettings

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class GitHubAPIError(Exception):
    """A GitHub REST call returned a non-2xx status (or never got a response)."""

    def __init__(self, method: str, path: str, status: int, body: str):
        self.method = method
        self.path = path
        self.status = status
        self.body = body
        super().__init__(f"GitHub API {method} {path} failed ({status}): {body}")

    @property
    def not_found(self) -> bool:
        return self.status == 404


# =============================================================================
# CLIENT
# =============================================================================

class GitHubClient:
    """
    GitHub REST client bound to one owner (user account).

    The `session` argument accepts any object with a requests-compatible
    `request(method, url, params=, json=, headers=, timeout=)` method,
    which is how tests substitute an in-memory host. An injected session is
    shared as-is; otherwise every thread gets its own session from
    `session_factory`, since requests.Session is not thread-safe and wave
    mode issues calls from several worker threads.
    """

    def __init__(
        self,
        token: str,
        owner: str,
        api_url: str = "https://api.github.com",
        api_version: str = "2022-11-28",
        user_agent: str = "foreman-orchestrator",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.owner = owner
        self.base_url = api_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._session_factory = session_factory
        self._local = threading.local()
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": api_version,
            "User-Agent": user_agent,
        }

    @classmethod
    def from_settings(
        cls,
        settings: GitHubSettings,
        session: Optional[requests.Session] = None,
    ) -> "GitHubClient":
        return cls(
            token=settings.token,
            owner=settings.owner,
            api_url=settings.api_url,
            api_version=settings.api_version,
            user_agent=settings.user_agent,
            timeout=settings.timeout,
            session=session,
        )

    @property
    def session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            self._local.session = session
        return session

    # =========================================================================
    # REQUEST HELPER
    # =========================================================================

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Issue one REST call.

        Raises:
            GitHubAPIError: On any non-2xx response or transport failure
        """
        url = f"{self.base_url}{path}"
        logger.debug(f"GitHub {method} {path}")
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json,
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise GitHubAPIError(method, path, 0, str(e)) from e

        if not 200 <= response.status_code < 300:
            raise GitHubAPIError(method, path, response.status_code, response.text)
        if response.status_code == 204 or not response.text:
            return {}
        return response.json()

    def _get_or_none(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """GET that maps 404 to None. Any other failure propagates."""
        try:
            return self.request("GET", path, params=params)
        except GitHubAPIError as e:
            if e.not_found:
                return None
            raise

    def repo_path(self, repo: str) -> str:
        return f"/repos/{self.owner}/{repo}"

    # =========================================================================
    # REPOSITORIES
    # =========================================================================

    def get_repository(self, repo: str) -> Optional[Dict[str, Any]]:
        return self._get_or_none(self.repo_path(repo))

    def create_repository(self, name: str, description: str = "") -> Dict[str, Any]:
        return self.request("POST", "/user/repos", json={
            "name": name,
            "private": False,
            "auto_init": True,
            "description": description[:140],
        })

    def protect_branch(self, repo: str, branch: str, contexts: List[str]) -> Dict[str, Any]:
        return self.request("PUT", f"{self.repo_path(repo)}/branches/{branch}/protection", json={
            "required_status_checks": {"strict": True, "contexts": list(contexts)},
            "enforce_admins": False,
            "required_pull_request_reviews": None,
            "restrictions": None,
            "allow_force_pushes": False,
            "allow_deletions": False,
            "required_linear_history": False,
        })

    def create_pages_site(self, repo: str, branch: str) -> Dict[str, Any]:
        return self.request("POST", f"{self.repo_path(repo)}/pages", json={
            "source": {"branch": branch, "path": "/"},
        })

    # =========================================================================
    # GIT REFS
    # =========================================================================

    def get_ref(self, repo: str, branch: str) -> Optional[Dict[str, Any]]:
        return self._get_or_none(f"{self.repo_path(repo)}/git/ref/heads/{branch}")

    def create_ref(self, repo: str, branch: str, sha: str) -> Dict[str, Any]:
        return self.request("POST", f"{self.repo_path(repo)}/git/refs", json={
            "ref": f"refs/heads/{branch}",
            "sha": sha,
        })

    # =========================================================================
    # CONTENTS
    # =========================================================================

    def get_file(self, repo: str, path: str, ref: str) -> Optional[Dict[str, Any]]:
        return self._get_or_none(
            f"{self.repo_path(repo)}/contents/{quote(path, safe='/')}",
            params={"ref": ref},
        )

    def put_file(
        self,
        repo: str,
        path: str,
        encoded_content: str,
        message: str,
        branch: str,
        sha: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "message": message,
            "content": encoded_content,
            "branch": branch,
        }
        if sha:
            body["sha"] = sha
        return self.request("PUT", f"{self.repo_path(repo)}/contents/{quote(path, safe='/')}", json=body)

    # =========================================================================
    # PULL REQUESTS AND CHECKS
    # =========================================================================

    def list_open_pulls(self, repo: str, head: str, base: str) -> List[Dict[str, Any]]:
        return self.request("GET", f"{self.repo_path(repo)}/pulls", params={
            "state": "open",
            "head": f"{self.owner}:{head}",
            "base": base,
            "per_page": 50,
        }) or []

    def create_pull(self, repo: str, head: str, base: str, title: str, body: str) -> Dict[str, Any]:
        return self.request("POST", f"{self.repo_path(repo)}/pulls", json={
            "title": title,
            "head": head,
            "base": base,
            "body": body,
        })

    def get_pull(self, repo: str, pr_number: int) -> Dict[str, Any]:
        return self.request("GET", f"{self.repo_path(repo)}/pulls/{pr_number}")

    def merge_pull(self, repo: str, pr_number: int, merge_method: str = "squash") -> Dict[str, Any]:
        return self.request("PUT", f"{self.repo_path(repo)}/pulls/{pr_number}/merge", json={
            "merge_method": merge_method,
        })

    def list_check_runs(self, repo: str, sha: str) -> List[Dict[str, Any]]:
        data = self.request("GET", f"{self.repo_path(repo)}/commits/{sha}/check-runs", params={
            "per_page": 100,
        })
        return data.get("check_runs", []) if isinstance(data, dict) else []
