"""
FOREMAN SCAFFOLD - Repository Bootstrap Templates

Static content written into freshly created repositories:

- index.html landing page listing the run's tasks
- .github/workflows/ci.yml: the `build` check required by branch protection
- .github/workflows/deploy.yml: Pages deploy trigger (optional)
- tasks/<id>.md task documents and README task-link lines

Everything here is a pure function of its inputs; the execution adapter
decides where and when the content is written.
"""
import html
from typing import Iterable, List, Optional

from core.schemas import FileChange, Task

README_LINKS_HEADER = "## Task Links"

CI_WORKFLOW = """name: CI

on:
  pull_request:
    branches: [ main ]

jobs:
  build:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4

      - name: Basic validation
        run: |
          echo "Running static checks..."
          if [ ! -f index.html ]; then
            echo "Missing index.html"
            exit 1
          fi

      - name: Lint HTML
        run: |
          if grep -q "<html" index.html; then
            echo "HTML structure present"
          else
            echo "Invalid HTML"
            exit 1
          fi
"""

DEPLOY_WORKFLOW = """name: Deploy Pages

on:
  push:
    branches: [ main ]

jobs:
  deploy:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4
      - name: Trigger Pages
        run: echo "Deploy triggered"
"""


BOOTSTRAP_MESSAGES = {
    "index.html": "Add landing page",
    ".github/workflows/ci.yml": "Add CI workflow",
    ".github/workflows/deploy.yml": "Add deploy workflow",
}


def render_landing_page(objective: str, tasks: Iterable[Task]) -> str:
    """Minimal HTML page naming the objective and its tasks."""
    title = html.escape(objective)
    items = "\n    ".join(
        f"<li>{html.escape(task.id)}: {html.escape(task.description)}</li>" for task in tasks
    )
    return f"""<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width,initial-scale=1" />
  <title>{title}</title>
  <style>body{{font-family:sans-serif;padding:48px;max-width:900px;margin:0 auto}}</style>
</head>
<body>
  <h1>{title}</h1>
  <p>Generated by Foreman.</p>
  <h2>Tasks</h2>
  <ul>
    {items}
  </ul>
</body>
</html>
"""


def bootstrap_files(objective: str, tasks: Iterable[Task], enable_pages: bool) -> List[FileChange]:
    """Files committed to the default branch before any task branch exists."""
    files = [
        FileChange(path="index.html", content=render_landing_page(objective, tasks)),
        FileChange(path=".github/workflows/ci.yml", content=CI_WORKFLOW),
    ]
    if enable_pages:
        files.append(FileChange(path=".github/workflows/deploy.yml", content=DEPLOY_WORKFLOW))
    return files


# =============================================================================
# TASK DOCUMENTS
# =============================================================================

def task_doc_path(task: Task) -> str:
    return f"tasks/{task.id}.md"


def render_task_doc(objective: str, task: Task) -> str:
    return f"# {task.id}\n\n{task.description}\n\nObjective:\n- {objective}\n"


def readme_link(task: Task) -> str:
    return f"- [{task.id}]({task_doc_path(task)}): {task.description}"


def readme_with_link(repo: str, current: Optional[str], link: str) -> str:
    """
    Append a task link to README content.

    Starts a fresh README when there is none; a link already present is
    not duplicated.
    """
    text = current if current else f"# {repo}\n\n{README_LINKS_HEADER}\n"
    if link.strip() in text:
        return text
    return f"{text.rstrip()}\n{link.strip()}\n"
