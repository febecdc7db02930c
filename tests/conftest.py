"""
Pytest configuration and shared fixtures for Foreman test suite.

FakeGitHub is an in-memory host speaking the subset of the GitHub REST API
that GitHubClient uses. It stands in for requests.Session, so every layer
above the session runs unmodified.
"""
import base64
import hashlib
import json
import re
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlsplit

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


# =============================================================================
# FAKE GITHUB HOST
# =============================================================================

class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        self._payload = payload
        if text is not None:
            self.text = text
        else:
            self.text = "" if payload is None else json.dumps(payload)

    def json(self):
        return self._payload


def _digest(*parts: str) -> str:
    return hashlib.sha1("\x00".join(parts).encode("utf-8")).hexdigest()


def _as_bytes(content) -> bytes:
    return content if isinstance(content, bytes) else content.encode("utf-8")


def _blob_sha(content) -> str:
    """Blob SHA for text or binary (bytes) file content."""
    return hashlib.sha1(b"blob\x00" + _as_bytes(content)).hexdigest()


class FakeGitHub:
    """
    In-memory GitHub for one owner.

    Git model: every commit sha maps to a full tree {path: content}; a
    branch ref points at a commit. Writing a file creates a new commit.
    """

    def __init__(self, owner: str = "octo"):
        self.owner = owner
        self.calls: List[Tuple[str, str]] = []
        self.payloads: List[Tuple[str, str, Any]] = []
        self.repos: Dict[str, Dict[str, Any]] = {}
        self.refs: Dict[Tuple[str, str], str] = {}
        self.commits: Dict[str, Dict[str, str]] = {}
        self.pulls: Dict[str, List[Dict[str, Any]]] = {}
        self.protections: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.pages: set = set()
        self.check_runs: Dict[str, List[Dict[str, Any]]] = {}
        self.default_check_conclusions: List[str] = []
        self.mergeable_state = "clean"
        self._failures: List[Tuple[str, str, int, str]] = []
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def fail_on(self, method: str, path_pattern: str, status: int = 500, body: str = "boom"):
        """Make matching calls fail with `status`."""
        self._failures.append((method, path_pattern, status, body))

    def count(self, method: str, path_pattern: str = "") -> int:
        return sum(
            1 for m, p in self.calls if m == method and re.search(path_pattern, p)
        )

    def add_repo(self, name: str, files: Optional[Dict[str, str]] = None) -> None:
        self.repos[name] = {"name": name, "full_name": f"{self.owner}/{name}", "default_branch": "main"}
        tree = {"README.md": f"# {name}\n"}
        tree.update(files or {})
        self.refs[(name, "main")] = self._commit(name, tree)
        self.pulls.setdefault(name, [])

    def branch_files(self, repo: str, branch: str) -> Dict[str, str]:
        sha = self.refs.get((repo, branch))
        return dict(self.commits.get(sha, {})) if sha else {}

    def set_checks(self, repo: str, pr_number: int, conclusions: List[Optional[str]]) -> None:
        pr = self._find_pull(repo, pr_number)
        self.check_runs[pr["head"]["sha"]] = [
            {"name": f"check-{i}", "status": "completed", "conclusion": c}
            for i, c in enumerate(conclusions)
        ]

    def open_pulls(self, repo: str) -> List[Dict[str, Any]]:
        return [pr for pr in self.pulls.get(repo, []) if pr["state"] == "open"]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _commit(self, repo: str, tree: Dict[str, str]) -> str:
        sha = _digest(repo, str(len(self.commits)), json.dumps(tree, sort_keys=True, default=bytes.hex))
        self.commits[sha] = dict(tree)
        return sha

    def _find_pull(self, repo: str, number: int) -> Optional[Dict[str, Any]]:
        for pr in self.pulls.get(repo, []):
            if pr["number"] == number:
                return pr
        return None

    def _pull_view(self, repo: str, pr: Dict[str, Any]) -> Dict[str, Any]:
        view = json.loads(json.dumps(pr))
        view["head"]["sha"] = self.refs.get((repo, pr["head"]["ref"]), pr["head"]["sha"])
        return view

    # -------------------------------------------------------------------------
    # requests.Session interface
    # -------------------------------------------------------------------------

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        with self._lock:
            return self._handle(method, url, params, json)

    def _handle(self, method, url, params, json):
        path = unquote(urlsplit(url).path)
        self.calls.append((method, path))
        self.payloads.append((method, path, json))

        for f_method, pattern, status, body in self._failures:
            if f_method == method and re.search(pattern, path):
                return FakeResponse(status, text=body)

        return self._dispatch(method, path, params or {}, json or {})

    def _dispatch(self, method: str, path: str, params: Dict[str, Any], body: Dict[str, Any]) -> FakeResponse:
        if method == "POST" and path == "/user/repos":
            name = body["name"]
            if name in self.repos:
                return FakeResponse(422, {"message": "name already exists on this account"})
            self.add_repo(name)
            return FakeResponse(201, self.repos[name])

        match = re.match(rf"^/repos/{re.escape(self.owner)}/([^/]+)(/.*)?$", path)
        if not match:
            return FakeResponse(404, {"message": "Not Found"})
        repo, rest = match.group(1), match.group(2) or ""
        if repo not in self.repos:
            return FakeResponse(404, {"message": "Not Found"})

        if rest == "" and method == "GET":
            return FakeResponse(200, self.repos[repo])

        m = re.match(r"^/branches/(.+)/protection$", rest)
        if m and method == "PUT":
            self.protections[(repo, m.group(1))] = body
            return FakeResponse(200, {"url": path})

        if rest == "/pages" and method == "POST":
            if repo in self.pages:
                return FakeResponse(409, {"message": "GitHub Pages is already enabled."})
            self.pages.add(repo)
            return FakeResponse(201, {"html_url": f"https://{self.owner}.github.io/{repo}/"})

        m = re.match(r"^/git/ref/heads/(.+)$", rest)
        if m and method == "GET":
            sha = self.refs.get((repo, m.group(1)))
            if sha is None:
                return FakeResponse(404, {"message": "Not Found"})
            return FakeResponse(200, {"ref": f"refs/heads/{m.group(1)}", "object": {"sha": sha, "type": "commit"}})

        if rest == "/git/refs" and method == "POST":
            branch = body["ref"][len("refs/heads/"):]
            if (repo, branch) in self.refs:
                return FakeResponse(422, {"message": "Reference already exists"})
            if body["sha"] not in self.commits:
                return FakeResponse(422, {"message": "Object does not exist"})
            self.refs[(repo, branch)] = body["sha"]
            return FakeResponse(201, {"ref": body["ref"], "object": {"sha": body["sha"]}})

        m = re.match(r"^/contents/(.+)$", rest)
        if m and method == "GET":
            branch = params.get("ref", "main")
            tree = self.branch_files(repo, branch)
            if m.group(1) not in tree:
                return FakeResponse(404, {"message": "Not Found"})
            content = tree[m.group(1)]
            encoded = base64.b64encode(_as_bytes(content)).decode("ascii")
            # The real API wraps base64 at 60 columns
            wrapped = "\n".join(encoded[i:i + 60] for i in range(0, len(encoded), 60))
            return FakeResponse(200, {"path": m.group(1), "content": wrapped, "sha": _blob_sha(content)})

        if m and method == "PUT":
            file_path, branch = m.group(1), body["branch"]
            if (repo, branch) not in self.refs:
                return FakeResponse(404, {"message": "Branch not found"})
            tree = self.branch_files(repo, branch)
            if file_path in tree and body.get("sha") != _blob_sha(tree[file_path]):
                return FakeResponse(409, {"message": "sha does not match"})
            if file_path not in tree and body.get("sha"):
                return FakeResponse(422, {"message": "sha supplied for a new file"})
            tree[file_path] = base64.b64decode(body["content"]).decode("utf-8")
            self.refs[(repo, branch)] = self._commit(repo, tree)
            return FakeResponse(200 if body.get("sha") else 201, {"content": {"path": file_path}})

        if rest == "/pulls" and method == "GET":
            head = params.get("head", "")
            head_branch = head.split(":", 1)[1] if ":" in head else head
            matches = [
                self._pull_view(repo, pr) for pr in self.open_pulls(repo)
                if pr["head"]["ref"] == head_branch and pr["base"]["ref"] == params.get("base")
            ]
            return FakeResponse(200, matches)

        if rest == "/pulls" and method == "POST":
            if (repo, body["head"]) not in self.refs:
                return FakeResponse(422, {"message": "Validation Failed"})
            number = sum(len(prs) for prs in self.pulls.values()) + 1
            pr = {
                "number": number,
                "html_url": f"https://github.com/{self.owner}/{repo}/pull/{number}",
                "title": body["title"],
                "body": body.get("body", ""),
                "state": "open",
                "merged": False,
                "mergeable_state": self.mergeable_state,
                "head": {"ref": body["head"], "sha": self.refs[(repo, body["head"])]},
                "base": {"ref": body["base"]},
            }
            self.pulls[repo].append(pr)
            return FakeResponse(201, self._pull_view(repo, pr))

        m = re.match(r"^/pulls/(\d+)$", rest)
        if m and method == "GET":
            pr = self._find_pull(repo, int(m.group(1)))
            if pr is None:
                return FakeResponse(404, {"message": "Not Found"})
            return FakeResponse(200, self._pull_view(repo, pr))

        m = re.match(r"^/pulls/(\d+)/merge$", rest)
        if m and method == "PUT":
            pr = self._find_pull(repo, int(m.group(1)))
            if pr is None:
                return FakeResponse(404, {"message": "Not Found"})
            if pr["merged"]:
                return FakeResponse(405, {"message": "Pull Request is not mergeable"})
            pr["merged"] = True
            pr["state"] = "closed"
            tree = self.branch_files(repo, pr["base"]["ref"])
            tree.update(self.branch_files(repo, pr["head"]["ref"]))
            merge_sha = self._commit(repo, tree)
            self.refs[(repo, pr["base"]["ref"])] = merge_sha
            return FakeResponse(200, {"sha": merge_sha, "merged": True, "message": "Pull Request successfully merged"})

        m = re.match(r"^/commits/([0-9a-f]+)/check-runs$", rest)
        if m and method == "GET":
            runs = self.check_runs.get(m.group(1))
            if runs is None:
                runs = [
                    {"name": f"check-{i}", "status": "completed", "conclusion": c}
                    for i, c in enumerate(self.default_check_conclusions)
                ]
            return FakeResponse(200, {"total_count": len(runs), "check_runs": runs})

        return FakeResponse(404, {"message": f"Unhandled {method} {path}"})


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset global singletons before each test to ensure isolation."""
    from infrastructure.event_bus import reset_event_bus
    from core.llm import reset_llm

    reset_event_bus()
    reset_llm()
    yield
    reset_event_bus()
    reset_llm()


@pytest.fixture
def fake_github():
    """Provide an empty in-memory GitHub host for owner `octo`."""
    return FakeGitHub(owner="octo")


@pytest.fixture
def github_client(fake_github):
    from infrastructure.github_client import GitHubClient
    return GitHubClient(token="test-token", owner="octo", session=fake_github)


@pytest.fixture
def executor(github_client):
    """Execution adapter that polls three times without sleeping."""
    from infrastructure.execution import ExecutionAdapter
    return ExecutionAdapter(
        github_client,
        poll_attempts=3,
        poll_interval=0.0,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def settings():
    from infrastructure.config import ExecutionSettings, GitHubSettings, Settings
    return Settings(
        github=GitHubSettings(token="test-token", owner="octo"),
        execution=ExecutionSettings(poll_attempts=3, poll_interval=0.0),
    )


@pytest.fixture
def sample_tasks():
    """task-a <- task-b, plus an independent task-c."""
    from core.schemas import Task
    return [
        Task(id="task-a", description="Add /health route"),
        Task(id="task-b", description="Test /health route", dependencies=["task-a"]),
        Task(id="task-c", description="Document the endpoint"),
    ]


@pytest.fixture
def coordinator(executor):
    """Run coordinator with template capabilities over the in-memory host."""
    from agents.capabilities import build_capabilities
    from agents.orchestrator import RunCoordinator
    from agents.pipeline import AgentPipeline
    return RunCoordinator(AgentPipeline(build_capabilities("template")), executor)


@pytest.fixture
def app(settings, coordinator):
    from api.routes import create_app
    return create_app(settings=settings, coordinator=coordinator)


@pytest.fixture
def client(app):
    """TestClient with the lifespan running, so the event bus is bound."""
    from starlette.testclient import TestClient
    with TestClient(app) as test_client:
        yield test_client
