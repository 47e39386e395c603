from __future__ import annotations

import importlib.util
import pathlib
import runpy

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
GENERATED = ROOT / "transport" / "proto" / "mahjong_ai_pb2.py"


def pytest_configure(config: pytest.Config) -> None:
    """Generate the protobuf modules once so the gRPC servicer can be imported."""
    if GENERATED.exists() or importlib.util.find_spec("grpc_tools") is None:
        return
    generator = runpy.run_path(str(ROOT / "scripts" / "generate_proto.py"))
    rc = generator["main"]()
    if rc != 0:
        raise pytest.UsageError(f"proto generation failed with exit code {rc}")
