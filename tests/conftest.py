# ruff: noqa: E402

import sys
from pathlib import Path
from typing import Iterator

import pytest
from _pytest.doctest import DoctestModule

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import seamline.log as seamline_log

DOCTEST_MODULES = {
    ROOT / "src" / "seamline" / "__init__.py",
    ROOT / "src" / "seamline" / "config.py",
    ROOT / "src" / "seamline" / "executor.py",
    ROOT / "src" / "seamline" / "git.py",
    ROOT / "src" / "seamline" / "locks.py",
    ROOT / "src" / "seamline" / "log.py",
    ROOT / "src" / "seamline" / "models.py",
    ROOT / "src" / "seamline" / "paths.py",
    ROOT / "src" / "seamline" / "policy.py",
    ROOT / "src" / "seamline" / "review.py",
    ROOT / "src" / "seamline" / "tasks.py",
    ROOT / "src" / "seamline" / "workspaces.py",
    ROOT / "src" / "seamline" / "worktrees.py",
}


@pytest.fixture(autouse=True)
def _quiet_logging() -> Iterator[None]:
    seamline_log.set_level("error")
    yield
    seamline_log.set_level(None)


def pytest_collect_file(
    parent: pytest.Collector, file_path: Path
) -> DoctestModule | None:
    path = file_path if isinstance(file_path, Path) else Path(str(file_path))
    if path in DOCTEST_MODULES:
        return DoctestModule.from_parent(parent, path=path)
    return None
