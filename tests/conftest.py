"""Shared fixtures: a fresh task store and a small sample repo on disk."""

import pytest

from drawagent.storage.sqlite_store import TaskStore


@pytest.fixture
def store(tmp_path):
    """Per-test TaskStore with schema initialized."""
    db = TaskStore(tmp_path / "data" / "test.db")
    db.init_db()
    yield db
    db.close()


@pytest.fixture
def repo_dir(tmp_path):
    """Small TypeScript/Python project to point the tools at."""
    repo = tmp_path / "repo"
    repo.mkdir()

    (repo / "src").mkdir()
    (repo / "src" / "main.ts").write_text(
        "import { add } from './utils';\n"
        "\n"
        "export class App {\n"
        "  start() {\n"
        "    console.log(add(1, 2));\n"
        "  }\n"
        "}\n"
    )
    (repo / "src" / "utils.ts").write_text(
        "export function add(a: number, b: number): number {\n  return a + b;\n}\n"
    )
    (repo / "server.py").write_text(
        "def handle(request):\n    return route(request)\n\n\nclass Router:\n    pass\n"
    )
    (repo / "README.md").write_text("# Test project\n")

    return repo
