#!/usr/bin/env python3
"""
Lint and format the project with ruff, isort and black.

    python lint.py            # fix in place
    python lint.py --check    # report only, exit 1 on any finding
"""

import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).parent
TARGETS = ["autorecord", "cogs", "tests", "lint.py", "main.py"]


def build_steps(check_only: bool) -> list[tuple[str, list[str]]]:
    if check_only:
        return [
            ("Ruff linting", ["ruff", "check", *TARGETS]),
            ("isort import order check", ["isort", "--check-only", *TARGETS]),
            ("Black formatting check", ["black", "--check", *TARGETS]),
        ]
    return [
        ("Ruff auto-fix", ["ruff", "check", "--fix", *TARGETS]),
        ("isort import sorting", ["isort", *TARGETS]),
        ("Black code formatting", ["black", *TARGETS]),
    ]


def run_step(description: str, command: list[str]) -> bool:
    print(f"\n{'=' * 80}\n{description}: {' '.join(command)}\n{'=' * 80}")
    try:
        return subprocess.run(command, cwd=ROOT).returncode == 0
    except FileNotFoundError:
        print(f"❌ {command[0]} is not installed (pip install -e '.[dev]')")
        return False


def main() -> int:
    check_only = "--check" in sys.argv
    mode = "CHECK-ONLY" if check_only else "AUTO-FIX"
    print(f"\n🔍 Running in {mode} mode\n")

    results = [(description, run_step(description, command)) for description, command in build_steps(check_only)]

    print(f"\n{'=' * 80}\nSUMMARY\n{'=' * 80}")
    for description, passed in results:
        print(f"{'✅' if passed else '❌'} {description}")

    if all(passed for _, passed in results):
        print("\n🎉 All steps passed!\n")
        return 0

    if check_only:
        print("\n⚠️  Some checks failed. Run 'python lint.py' to auto-fix.\n")
    return 1


if __name__ == "__main__":
    sys.exit(main())
