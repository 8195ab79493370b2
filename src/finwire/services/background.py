from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

import loguru
from loguru import logger


@dataclass(frozen=True)
class BackgroundFailure:
    name: str
    error: BaseException


class BackgroundTaskLogger:
    """Handles all logging for BackgroundTaskRunner."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def submitted(self, name: str, pending: int) -> None:
        self._logger.bind(task=name, pending=pending).debug(
            "Scheduled background task {} ({} pending)", name, pending
        )

    def succeeded(self, name: str) -> None:
        self._logger.bind(task=name).debug("Background task {} finished", name)

    def failed(self, name: str, error: BaseException) -> None:
        self._logger.bind(task=name).opt(exception=error).error(
            "Background task {} failed: {}", name, error
        )

    def cancelled(self, name: str) -> None:
        self._logger.bind(task=name).warning("Background task {} was cancelled", name)


class BackgroundTaskRunner:
    """Tracks work that runs after the caller returns.

    Every submitted coroutine is kept until it finishes. Failures are logged
    with the task name and collected for ``wait_all``.
    """

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._tasks: dict[asyncio.Task[Any], str] = {}
        self._failures: list[BackgroundFailure] = []
        self._logger = BackgroundTaskLogger(logger_instance)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop. Must be called from async code."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks[task] = name
        task.add_done_callback(self._on_done)
        self._logger.submitted(name, len(self._tasks))
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        name = self._tasks.pop(task, task.get_name())
        if task.cancelled():
            self._logger.cancelled(name)
            return
        error = task.exception()
        if error is None:
            self._logger.succeeded(name)
            return
        self._failures.append(BackgroundFailure(name=name, error=error))
        self._logger.failed(name, error)

    async def wait_all(self) -> list[BackgroundFailure]:
        """Wait for every pending task, including ones scheduled meanwhile.

        Returns the failures collected since the previous call.
        """
        while self._tasks:
            await asyncio.wait(list(self._tasks))
            # Let done callbacks run before checking again.
            await asyncio.sleep(0)
        failures, self._failures = self._failures, []
        return failures
