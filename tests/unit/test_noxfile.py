# SPDX-License-Identifier: MIT
from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

import noxfile

REPO_ROOT = Path(__file__).resolve().parents[2]


class _RecordingSession:
    def __init__(self) -> None:
        self.runs: list[tuple[Any, ...]] = []

    def install(self, *args: Any, **kwargs: Any) -> None:
        pass

    def run(self, *args: Any, **kwargs: Any) -> None:
        self.runs.append(args)


def _suites() -> set[str]:
    tests_root = REPO_ROOT / "tests"
    return {
        f"tests/{path.relative_to(tests_root).parts[0]}/"
        for path in tests_root.rglob("test_*.py")
        if len(path.relative_to(tests_root).parts) > 1
    }


@pytest.mark.parametrize("session_func", [noxfile.tests_3_11, noxfile.tests_3_12])
def test_every_interpreter_session_runs_every_suite(session_func) -> None:
    session = _RecordingSession()

    session_func(session)

    command = session.runs[0]
    assert command[0] == "pytest"
    assert _suites() <= set(command[1:])
    assert set(noxfile.TEST_PATHS) == _suites()
