"""Nox sessions for FlashRoute automation."""

from __future__ import annotations

import pathlib

import nox

REPO_ROOT = pathlib.Path(__file__).parent

TEST_PATHS = (
    "tests/unit/",
    "tests/integration/",
    "tests/property/",
    "tests/api/",
)

nox.options.sessions = ["tests-3.11", "tests-3.12", "lint"]
nox.options.error_on_missing_interpreters = False


def _install_requirements(session: nox.Session) -> None:
    session.install("-e", ".[test]")


def _run_pytest(session: nox.Session) -> None:
    session.run("pytest", *TEST_PATHS, env={"PYTHONPATH": str(REPO_ROOT)})


@nox.session(name="tests-3.11", python="3.11")
def tests_3_11(session: nox.Session) -> None:
    """Run the full pytest suite under Python 3.11."""

    _install_requirements(session)
    _run_pytest(session)


@nox.session(name="tests-3.12", python="3.12")
def tests_3_12(session: nox.Session) -> None:
    """Run the full pytest suite under Python 3.12."""

    _install_requirements(session)
    _run_pytest(session)


@nox.session
def lint(session: nox.Session) -> None:
    """Run linters via ruff and mypy."""

    _install_requirements(session)
    session.install("ruff", "mypy")
    session.run("ruff", "check", str(REPO_ROOT))
    session.run("mypy", "execution", "domain")
