"""
Standalone gRPC server entrypoint.

Run with::

    python run_grpc.py

Or start both servers::

    # Terminal 1: HTTP/JSON
    uvicorn main:app --host 0.0.0.0 --port 8081

    # Terminal 2: gRPC
    python run_grpc.py

Generate the protobuf modules first: ``python scripts/generate_proto.py``.
"""

from __future__ import annotations

import asyncio
import sys

import structlog

from core.logger import configure_logging

logger = structlog.get_logger(__name__)


def main() -> None:
    """Bootstrap and run the async gRPC server."""
    configure_logging()
    from transport.grpc_server import serve_grpc

    logger.info("run_grpc.starting")
    try:
        asyncio.run(serve_grpc())
    except KeyboardInterrupt:
        logger.info("run_grpc.interrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
