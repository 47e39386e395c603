#!/usr/bin/env python3
"""
Generate Python gRPC code from ``protos/mahjong_ai.proto``.

Output lands in ``transport/proto/`` (imported as ``transport.proto``).
"""

from __future__ import annotations

import pathlib
import sys
from importlib import resources

from grpc_tools import protoc

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
PROTO_DIR = REPO_ROOT / "protos"
OUT_DIR = REPO_ROOT / "transport" / "proto"
PROTO_NAME = "mahjong_ai"


def main() -> int:
    OUT_DIR.mkdir(parents=True, exist_ok=True)

    proto_file = PROTO_DIR / f"{PROTO_NAME}.proto"
    if not proto_file.exists():
        print(f"ERROR: missing proto file: {proto_file}", file=sys.stderr)
        return 1

    # Well-known types (google/protobuf/timestamp.proto) ship with grpc_tools.
    well_known = resources.files("grpc_tools") / "_proto"

    args = [
        "protoc",
        f"-I{PROTO_DIR}",
        f"-I{well_known}",
        f"--python_out={OUT_DIR}",
        f"--grpc_python_out={OUT_DIR}",
        str(proto_file),
    ]

    print("Running:", " ".join(args))
    rc = protoc.main(args)
    if rc != 0:
        print(f"ERROR: protoc failed with exit code {rc}", file=sys.stderr)
        return rc

    (OUT_DIR / "__init__.py").write_text("# Generated gRPC code package\n", encoding="utf-8")

    # grpc_tools emits `import mahjong_ai_pb2 as mahjong__ai__pb2`, which only
    # resolves when the output dir is on sys.path.
    grpc_file = OUT_DIR / f"{PROTO_NAME}_pb2_grpc.py"
    text = grpc_file.read_text(encoding="utf-8")
    fixed = text.replace(
        f"import {PROTO_NAME}_pb2 as",
        f"from . import {PROTO_NAME}_pb2 as",
    )
    if fixed != text:
        grpc_file.write_text(fixed, encoding="utf-8")
        print("Fixed import in:", grpc_file)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
