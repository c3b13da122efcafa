"""Minimal code editor used as the default apply command.

Reads a payload JSON produced by `CliCodeApplier` and writes each generated
file under the working directory.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Write generated files into a workdir.")
    parser.add_argument("--payload-file", required=True)
    parser.add_argument("--workdir", required=True)
    args = parser.parse_args(argv)

    payload = json.loads(Path(args.payload_file).read_text("utf-8"))
    files = payload.get("files")
    if not isinstance(files, dict) or not files:
        print("no changes in payload", file=sys.stderr)
        return 3

    workdir = Path(args.workdir).resolve()
    for relative, content in sorted(files.items()):
        path = Path(relative)
        if path.is_absolute() or ".." in path.parts:
            print(f"refusing unsafe path: {relative}", file=sys.stderr)
            return 2
        destination = workdir / path
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(str(content), "utf-8")
        print(f"changed: {path.as_posix()}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
