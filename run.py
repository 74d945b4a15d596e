from __future__ import annotations

import argparse
import subprocess
import sys


def _run_bootstrap() -> None:
    subprocess.run(
        [sys.executable, "-m", "pip", "install", "-e", "."],
        check=True,
    )
    subprocess.run(
        [sys.executable, "-m", "playwright", "install", "chromium"],
        check=True,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the chat automation worker.")
    parser.add_argument(
        "--bootstrap",
        action="store_true",
        help="Install dependencies and the Playwright Chromium build before starting.",
    )
    args = parser.parse_args()

    if args.bootstrap:
        _run_bootstrap()
    from worker import main as worker_main

    worker_main()


if __name__ == "__main__":
    main()
