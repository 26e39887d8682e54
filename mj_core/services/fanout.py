"""
批量分区并发执行

按分区键（店铺）分组，每个分区并发执行一次操作，等待全部结束后汇总。
单个分区失败不会取消或影响其他分区。
"""
import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, TypeVar

from mj_core.utils.errors import MajimeException
from mj_core.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class BatchResult:
    """单个分区的执行结果"""
    partition_key: str
    succeeded: bool
    count: int = 0
    error: Optional[Dict[str, Any]] = None
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "partition_key": self.partition_key,
            "succeeded": self.succeeded,
            "count": self.count,
        }
        if self.error is not None:
            result["error"] = self.error
        if self.data is not None:
            result["data"] = self.data
        return result


@dataclass
class FanOutSummary:
    """全部分区的汇总结果"""
    results: List[BatchResult] = field(default_factory=list)
    # 请求中无法归属到任何分区的条目
    not_found: List[Any] = field(default_factory=list)

    @property
    def succeeded(self) -> List[BatchResult]:
        return [r for r in self.results if r.succeeded]

    @property
    def failed(self) -> List[BatchResult]:
        return [r for r in self.results if not r.succeeded]

    @property
    def total_count(self) -> int:
        return sum(r.count for r in self.results)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed and not self.not_found

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": [r.to_dict() for r in self.succeeded],
            "failed": [r.to_dict() for r in self.failed],
            "not_found": list(self.not_found),
            "total_count": self.total_count,
            "all_succeeded": self.all_succeeded,
        }


def partition(items: Iterable[T], key: Callable[[T], Hashable]) -> Dict[Hashable, List[T]]:
    """按键分组，保持首次出现的顺序"""
    groups: Dict[Hashable, List[T]] = {}
    for item in items:
        groups.setdefault(key(item), []).append(item)
    return groups


def _error_payload(partition_key, exc: Exception) -> Dict[str, Any]:
    if isinstance(exc, MajimeException):
        return exc.to_dict()

    # 未预期的异常只记录日志，不向调用方暴露内部信息
    logger.error(
        "Partition operation failed",
        partition_key=partition_key,
        exc_info=(type(exc), exc, exc.__traceback__)
    )
    return {
        "type": "about:blank",
        "title": "Internal Server Error",
        "status": 500,
        "code": "PARTITION_FAILED",
        "detail": "An internal error occurred",
    }


def _to_batch_result(partition_key, items: List[Any], outcome: Any) -> BatchResult:
    if isinstance(outcome, BatchResult):
        outcome.partition_key = partition_key
        return outcome
    if isinstance(outcome, Exception):
        return BatchResult(
            partition_key=partition_key,
            succeeded=False,
            count=0,
            error=_error_payload(partition_key, outcome),
        )
    if isinstance(outcome, BaseException):
        raise outcome
    if isinstance(outcome, int) and not isinstance(outcome, bool):
        return BatchResult(partition_key=partition_key, succeeded=True, count=outcome)
    return BatchResult(partition_key=partition_key, succeeded=True, count=len(items), data=outcome)


async def fan_out(
    items: Iterable[T],
    key: Callable[[T], Hashable],
    operation: Callable[[Any, List[T]], Awaitable[Any]],
    on_settled: Optional[Callable[[FanOutSummary], Any]] = None,
    not_found: Optional[List[Any]] = None,
) -> FanOutSummary:
    """分区并发执行 operation(partition_key, items)

    operation 可以返回：
    - int：成功处理的数量
    - BatchResult：自行决定成功/失败（例如部分成功）
    - 其他值：作为 data，数量为分区条目数
    抛出的异常转换为失败的 BatchResult。

    on_settled 在所有分区结束后恰好调用一次。
    """
    groups = partition(items, key)
    keys = list(groups.keys())

    outcomes = await asyncio.gather(
        *(operation(k, groups[k]) for k in keys),
        return_exceptions=True
    )

    summary = FanOutSummary(
        results=[_to_batch_result(k, groups[k], outcome) for k, outcome in zip(keys, outcomes)],
        not_found=list(not_found or []),
    )

    logger.info(
        "Fan-out settled",
        partitions=len(keys),
        succeeded=len(summary.succeeded),
        failed=len(summary.failed),
        not_found=len(summary.not_found)
    )

    if on_settled is not None:
        settled = on_settled(summary)
        if inspect.isawaitable(settled):
            await settled

    return summary
