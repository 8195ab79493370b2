from __future__ import annotations

import asyncio
from collections.abc import Sequence
import json
import re
from typing import Any, Generic, Protocol, TypeVar

import loguru
from loguru import logger
from pydantic import ValidationError

from finwire.adapters.cache.expiring_cache import ExpiringCache, stable_key
from finwire.adapters.clients.classifier import ClassifierClient
from finwire.errors import BatchTooLargeError, ClassificationParseError

T = TypeVar("T")
R = TypeVar("R")
T_contra = TypeVar("T_contra", contravariant=True)
R_co = TypeVar("R_co", covariant=True)

DEFAULT_CONCURRENCY_LIMIT = 5

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*\n?(?P<body>.*?)\n?```$", re.DOTALL)


class ClassificationTask(Protocol[T_contra, R_co]):
    """Describes how one kind of item is shown to and read back from the classifier."""

    name: str

    def render_system_prompt(self, instruction: str) -> str: ...

    def serialize_item(self, idx: int, item: T_contra) -> dict[str, object]: ...

    def build_result(self, raw: dict[str, Any], item: T_contra) -> R_co: ...


class ClassificationLogger:
    """Handles all logging for the classification pipeline."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def batch_start(
        self, task: str, total_items: int, num_batches: int, max_concurrency: int
    ) -> None:
        self._logger.bind(
            task=task, items=total_items, batches=num_batches
        ).info(
            "Classifying {} items in {} batches (task: {}, max concurrency: {})",
            total_items,
            num_batches,
            task,
            max_concurrency,
        )

    def api_call(
        self, task: str, batch_index: int, total_batches: int, size: int
    ) -> None:
        self._logger.bind(task=task, batch=batch_index + 1, size=size).debug(
            "Calling classifier for batch {}/{} ({} items)",
            batch_index + 1,
            total_batches,
            size,
        )

    def cache_hit(self, task: str, batch_index: int) -> None:
        self._logger.bind(task=task, batch=batch_index + 1).debug(
            "Classifier cache hit for batch {}", batch_index + 1
        )

    def batch_complete(
        self, task: str, batch_index: int, total_batches: int, count: int
    ) -> None:
        self._logger.bind(task=task, batch=batch_index + 1, results=count).info(
            "Batch {}/{} classified {} items", batch_index + 1, total_batches, count
        )

    def batch_failed(
        self, task: str, batch_index: int, total_batches: int, error: BaseException
    ) -> None:
        self._logger.bind(task=task, batch=batch_index + 1).error(
            "Batch {}/{} failed: {}", batch_index + 1, total_batches, error
        )

    def truncated(self, task: str, batch_index: int, size: int) -> None:
        self._logger.bind(task=task, batch=batch_index + 1, size=size).warning(
            "Classifier output truncated for batch {} ({} items)", batch_index + 1, size
        )


class BatchClassificationPipeline(Generic[T, R]):
    """
    Splits items into fixed-size batches and classifies them with bounded
    concurrency.

    Batches run in groups of at most ``concurrency_limit``; a group finishes
    entirely before the next one starts. Results come back in input order.
    Any batch failure aborts the whole call and no partial results are
    returned.
    """

    def __init__(
        self,
        client: ClassifierClient,
        *,
        cache: ExpiringCache | None = None,
        cache_ttl_seconds: float = 0,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        self._client = client
        self._cache = cache if cache_ttl_seconds > 0 else None
        self._cache_ttl_seconds = cache_ttl_seconds
        self._logger = ClassificationLogger(logger_instance)

    async def classify(
        self,
        items: Sequence[T],
        instruction: str,
        task: ClassificationTask[T, R],
        *,
        batch_size: int,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
    ) -> list[R]:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")

        item_list = list(items)
        if not item_list:
            return []

        if len(item_list) <= batch_size:
            return await self._classify_batch(
                item_list, instruction, task, batch_index=0, total_batches=1
            )

        batches = [
            item_list[i : i + batch_size] for i in range(0, len(item_list), batch_size)
        ]
        total = len(batches)
        self._logger.batch_start(task.name, len(item_list), total, concurrency_limit)

        indexed: list[tuple[int, list[R]]] = []
        for group_start in range(0, total, concurrency_limit):
            group = range(group_start, min(group_start + concurrency_limit, total))
            outcomes = await asyncio.gather(
                *(
                    self._classify_indexed(
                        batches[idx], instruction, task, batch_index=idx, total=total
                    )
                    for idx in group
                ),
                return_exceptions=True,
            )
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
                indexed.append(outcome)

        indexed.sort(key=lambda pair: pair[0])
        return [result for _, batch_results in indexed for result in batch_results]

    async def _classify_indexed(
        self,
        batch: list[T],
        instruction: str,
        task: ClassificationTask[T, R],
        *,
        batch_index: int,
        total: int,
    ) -> tuple[int, list[R]]:
        try:
            results = await self._classify_batch(
                batch, instruction, task, batch_index=batch_index, total_batches=total
            )
        except Exception as e:
            self._logger.batch_failed(task.name, batch_index, total, e)
            raise
        self._logger.batch_complete(task.name, batch_index, total, len(results))
        return batch_index, results

    async def _classify_batch(
        self,
        batch: list[T],
        instruction: str,
        task: ClassificationTask[T, R],
        *,
        batch_index: int,
        total_batches: int,
    ) -> list[R]:
        payload = [task.serialize_item(idx, item) for idx, item in enumerate(batch)]
        system_prompt = task.render_system_prompt(instruction)
        user_content = json.dumps(payload, ensure_ascii=False, indent=2)
        cache_key = self._cache_key(task.name, system_prompt, payload)

        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if isinstance(cached, str):
                self._logger.cache_hit(task.name, batch_index)
                return self._parse_response(cached, batch, task)

        self._logger.api_call(task.name, batch_index, total_batches, len(batch))
        response = await self._client.complete(system_prompt, user_content)
        if response.truncated:
            self._logger.truncated(task.name, batch_index, len(batch))
            raise BatchTooLargeError(
                batch_index=batch_index,
                batch_size=len(batch),
                max_output_tokens=response.max_output_tokens,
            )

        results = self._parse_response(response.text, batch, task)
        if self._cache is not None:
            self._cache.set(cache_key, response.text, self._cache_ttl_seconds)
        return results

    def _cache_key(
        self, task_name: str, system_prompt: str, payload: list[dict[str, object]]
    ) -> str:
        return stable_key(
            {
                "task": task_name,
                "model": self._client.model,
                "prompt": system_prompt,
                "items": payload,
            }
        )

    def _parse_response(
        self, response_text: str, batch: list[T], task: ClassificationTask[T, R]
    ) -> list[R]:
        """Validate the response shape and realign results to the batch by idx."""
        raw_results = parse_result_array(response_text)

        by_idx: dict[int, dict[str, Any]] = {}
        for raw in raw_results:
            if not isinstance(raw, dict):
                raise ClassificationParseError(
                    f"Expected result objects, got {type(raw).__name__}"
                )
            idx = raw.get("idx")
            if not isinstance(idx, int) or isinstance(idx, bool):
                raise ClassificationParseError(
                    f"Result is missing an integer idx: {raw}"
                )
            if idx < 0 or idx >= len(batch):
                raise ClassificationParseError(
                    f"Result idx {idx} out of range for batch of {len(batch)}"
                )
            if idx in by_idx:
                raise ClassificationParseError(f"Duplicate result idx {idx}")
            by_idx[idx] = raw

        missing = [idx for idx in range(len(batch)) if idx not in by_idx]
        if missing:
            raise ClassificationParseError(
                f"Classifier returned {len(by_idx)} results for {len(batch)} items; "
                f"missing idx {missing[:10]}"
            )

        try:
            return [
                task.build_result(by_idx[idx], item) for idx, item in enumerate(batch)
            ]
        except ValidationError as e:
            raise ClassificationParseError(f"Invalid classifier result: {e}") from e


def parse_result_array(response_text: str) -> list[Any]:
    """Extract the JSON result array from classifier output.

    Handles both formats, optionally wrapped in markdown code fences:
    - Raw array: [...]
    - Object with "results" key: {"results": [...]}
    """
    text = response_text.strip()
    fenced = _FENCE_PATTERN.match(text)
    if fenced:
        text = fenced.group("body").strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("[")
        end = text.rfind("]") + 1
        if start == -1 or end <= start:
            raise ClassificationParseError(
                f"Could not find JSON in response: {response_text[:200]}"
            ) from None
        try:
            data = json.loads(text[start:end])
        except json.JSONDecodeError as e:
            raise ClassificationParseError(f"Failed to parse JSON response: {e}") from e

    if isinstance(data, dict) and isinstance(data.get("results"), list):
        return list(data["results"])
    if isinstance(data, list):
        return data
    raise ClassificationParseError(
        f"Expected JSON array or object with 'results', got {type(data).__name__}"
    )
