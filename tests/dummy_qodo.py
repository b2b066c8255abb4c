#!/usr/bin/env python3
"""Stand-in for the ``qodo`` CLI used by the subprocess tests.

The last argument is the prompt; its first word selects the behaviour.
"""
from __future__ import annotations

import os
import subprocess
import sys
import time


def out(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def start_helper() -> None:
    """Leave a background child running that inherits stdout and stderr."""
    subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])


def main() -> int:
    prompt = sys.argv[-1] if len(sys.argv) > 1 else ""
    mode, _, rest = prompt.partition(" ")

    if mode == "echo":
        out(rest)
        return 0

    if mode == "args":
        out(" ".join(sys.argv[1:]))
        return 0

    if mode == "env":
        out(f"CI={os.environ.get('CI')} NO_COLOR={os.environ.get('NO_COLOR')} TERM={os.environ.get('TERM')}")
        return 0

    if mode == "chunks":
        for word in ("one\n", "two\n", "three\n"):
            out(word)
            time.sleep(0.05)
        return 0

    if mode == "tool":
        out("┌─ read_files\n├── paths: package.json\n└─── ✓ ✓ Success: File read successfully\n")
        time.sleep(0.2)
        out("The package is named demo.\n")
        return 0

    if mode == "silent":
        return 0

    if mode == "fail":
        sys.stderr.write("boom: authentication required\n")
        sys.stderr.flush()
        return 3

    if mode == "partial":
        out("partial answer\n")
        return 1

    if mode == "interruptible":
        out("ready\n")
        while True:
            data = sys.stdin.buffer.read(1)
            if not data or data == b"\x03":
                out("interrupted\n")
                return 130

    if mode == "helper":
        start_helper()
        out("ready\n")
        time.sleep(30)
        return 0

    if mode == "lingering":
        start_helper()
        out("done\n")
        return 0

    if mode == "hang":
        out("ready\n")
        time.sleep(30)
        return 0

    out(f"unknown mode: {prompt}\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
