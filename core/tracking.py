"""
MLflow tracking helpers.

Provides a context-manager that wraps every unary completion call, logging
sampling parameters, the prompt, the output and latency to the configured
MLflow tracking server.  Disabled unless ``MLFLOW_ENABLED=true``.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import mlflow
import structlog

from core.config import Settings, get_settings

logger = structlog.get_logger(__name__)

_EXPERIMENT_ENSURED = False


def _ensure_experiment(settings: Settings) -> None:
    """Create / set the MLflow experiment once per process."""
    global _EXPERIMENT_ENSURED  # noqa: PLW0603
    if _EXPERIMENT_ENSURED:
        return

    mlflow.set_tracking_uri(settings.mlflow_tracking_uri)
    mlflow.set_experiment(settings.mlflow_experiment_name)
    _EXPERIMENT_ENSURED = True
    logger.info(
        "mlflow.experiment_configured",
        tracking_uri=settings.mlflow_tracking_uri,
        experiment=settings.mlflow_experiment_name,
    )


def _log_run(
    *,
    model_name: str,
    temperature: float,
    max_tokens: int,
    context_count: int,
    prompt: str,
    result: dict[str, Any],
    latency: float,
) -> None:
    with mlflow.start_run(nested=True):
        mlflow.log_params(
            {
                "model_name": model_name,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "context_count": context_count,
            }
        )
        mlflow.log_text(prompt, "prompt.txt")
        mlflow.log_text(str(result["output"]), "generation_output.txt")
        mlflow.log_metrics(
            {
                "latency_seconds": latency,
                "output_length": len(str(result["output"])),
                "tokens_used": result["tokens_used"],
            }
        )
        if result["error"]:
            mlflow.log_text(result["error"], "error.txt")
            mlflow.set_tag("status", "error")
        else:
            mlflow.set_tag("status", "success")


@asynccontextmanager
async def track_generation(
    *,
    model_name: str,
    temperature: float,
    max_tokens: int,
    context_count: int,
    prompt: str,
    settings: Settings | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Async context manager for tracking a completion in MLflow.

    Usage::

        async with track_generation(...) as bag:
            result = await provider.ask(request)
            bag["output"] = result.text

    ``bag`` is a mutable dict; set ``output`` / ``tokens_used`` inside the
    block.  Errors raised inside the block are recorded and re-raised;
    MLflow failures are logged and never reach the caller.
    """
    settings = settings or get_settings()
    bag: dict[str, Any] = {"output": "", "tokens_used": 0, "error": None}

    if not settings.mlflow_enabled:
        yield bag
        return

    start = time.perf_counter()
    try:
        yield bag
    except Exception as exc:
        bag["error"] = str(exc)
        raise
    finally:
        latency = time.perf_counter() - start
        try:
            _ensure_experiment(settings)
            _log_run(
                model_name=model_name,
                temperature=temperature,
                max_tokens=max_tokens,
                context_count=context_count,
                prompt=prompt,
                result=bag,
                latency=latency,
            )
        except Exception:
            logger.exception("mlflow.logging_failed")
