"""Concurrent fan-out of independent fetches with per-key status and fallbacks."""

import asyncio
import logging
from collections.abc import Sized
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

from research_desk.entities import FetchSpec, SourceStatus
from research_desk.errors import AggregateFetchError, OperationAborted
from research_desk.status import StatusListener, StatusTracker


logger = logging.getLogger(__name__)


def is_empty_value(value: Any) -> bool:
    """None and empty containers count as "no data"; numbers and False do not."""
    if value is None:
        return True
    if isinstance(value, (str, bytes)):
        return len(value) == 0
    if isinstance(value, Sized):
        return len(value) == 0
    return False


class AggregateResult:
    """
    Values and statuses for every key of one orchestration run.

    Values start as each key's fallback and statuses as pending; both are
    keyed by the same set from construction on, so they never diverge.
    Only the owning orchestrator mutates it, and freeze() makes it
    read-only once every key is terminal.

    Representation Invariants:
    - set(_values) == set(tracker.keys())
    - errors only holds keys whose status is ERROR
    """

    def __init__(self, subject: str, fallbacks: Mapping[str, Any]) -> None:
        self._subject = subject
        self._values: Dict[str, Any] = dict(fallbacks)
        self._tracker = StatusTracker(self._values.keys())
        self._errors: Dict[str, str] = {}
        self._frozen = False

    @property
    def subject(self) -> str:
        return self._subject

    @property
    def tracker(self) -> StatusTracker:
        return self._tracker

    @property
    def values(self) -> Mapping[str, Any]:
        return MappingProxyType(self._values)

    @property
    def statuses(self) -> Dict[str, SourceStatus]:
        return self._tracker.snapshot()

    @property
    def errors(self) -> Mapping[str, str]:
        return MappingProxyType(self._errors)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def keys(self) -> List[str]:
        return list(self._values)

    def status(self, key: str) -> SourceStatus:
        return self._tracker.get(key)

    def subscribe(self, listener: StatusListener):
        return self._tracker.subscribe(listener)

    def mark_loading(self, key: str) -> None:
        self._check_mutable()
        self._tracker.set_status(key, SourceStatus.LOADING)

    def settle(self, key: str, value: Any, status: SourceStatus, error: Optional[str] = None) -> None:
        """Record the final value and terminal status for `key`."""
        self._check_mutable()
        if key not in self._values:
            raise KeyError(f"Unknown result key: {key}")
        self._values[key] = value
        if status is SourceStatus.ERROR:
            self._errors[key] = error or "unknown error"
        self._tracker.set_status(key, status)

    def freeze(self) -> None:
        """Make the result read-only. Only legal once every key is terminal."""
        if not self._tracker.is_complete():
            pending = [k for k, s in self.statuses.items() if not s.is_terminal]
            raise ValueError(f"Cannot freeze result with unsettled keys: {', '.join(pending)}")
        self._frozen = True

    def _check_mutable(self) -> None:
        if self._frozen:
            raise RuntimeError(f"AggregateResult for {self._subject} is frozen")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self._subject,
            "data": dict(self._values),
            "status": self._tracker.as_strings(),
            "errors": dict(self._errors),
        }


async def _settle_one(
    key: str,
    spec: FetchSpec,
    result: AggregateResult
) -> None:
    result.mark_loading(key)
    try:
        if spec.timeout is not None:
            value = await asyncio.wait_for(spec.operation(), timeout=spec.timeout)
        else:
            value = await spec.operation()
    except OperationAborted:
        result.settle(key, spec.fallback, SourceStatus.ERROR, "aborted")
        raise
    except asyncio.TimeoutError:
        logger.warning(f"[{result.subject}] {key}: timed out after {spec.timeout}s")
        result.settle(key, spec.fallback, SourceStatus.ERROR, f"timed out after {spec.timeout}s")
        return
    except Exception as e:
        logger.warning(f"[{result.subject}] {key}: fetch failed: {e}")
        result.settle(key, spec.fallback, SourceStatus.ERROR, str(e) or type(e).__name__)
        return

    if is_empty_value(value):
        result.settle(key, value if value is not None else spec.fallback, SourceStatus.EMPTY)
    else:
        result.settle(key, value, SourceStatus.SUCCESS)


async def settle_all(
    specs: Mapping[str, FetchSpec],
    result: AggregateResult,
    abort: Optional[asyncio.Event] = None
) -> Dict[str, Any]:
    """
    Run every fetch concurrently and settle each key; never raises for a fetch failure.

    Preconditions:
    - every key of specs exists in result and is still pending

    Postconditions:
    - every key of specs is terminal in result
    - a failed or timed-out fetch leaves its fallback as the value
    - only OperationAborted escapes (raised after all siblings settle)

    Returns:
        The settled values for the keys of this batch
    """
    if abort is not None and abort.is_set():
        raise OperationAborted(f"{result.subject}: run aborted before batch start")

    outcomes = await asyncio.gather(
        *(_settle_one(key, spec, result) for key, spec in specs.items()),
        return_exceptions=True,
    )
    for outcome in outcomes:
        if isinstance(outcome, OperationAborted):
            raise outcome
        if isinstance(outcome, BaseException):
            # _settle_one only lets aborts through; anything else is a bug
            raise outcome

    if abort is not None and abort.is_set():
        raise OperationAborted(f"{result.subject}: run aborted")

    return {key: result[key] for key in specs}


class FanOutOrchestrator:
    """
    Two-phase concurrent fetch: a fatal core batch, then a best-effort batch.

    The core batch must produce data for every key; otherwise the run fails
    with AggregateFetchError and no best-effort fetch is started. The
    best-effort batch degrades each failure to its fallback value.
    """

    def __init__(self, listeners: Optional[Iterable[StatusListener]] = None) -> None:
        self._listeners = list(listeners or [])

    async def run(
        self,
        subject: str,
        core: Mapping[str, FetchSpec],
        best_effort: Mapping[str, FetchSpec],
        abort: Optional[asyncio.Event] = None
    ) -> AggregateResult:
        """
        Execute one aggregate fetch.

        Preconditions:
        - core and best_effort have disjoint key sets

        Postconditions:
        - Returns a frozen AggregateResult covering every key
        - Raises AggregateFetchError if any core key is not SUCCESS
        - Raises OperationAborted if abort fires mid-run

        Args:
            subject: What the run is for (usually a ticker), used in errors and logs
            core: Fetches whose data is required
            best_effort: Fetches whose failure only degrades the result
            abort: Cooperative cancellation signal

        Returns:
            The completed AggregateResult
        """
        overlap = set(core) & set(best_effort)
        if overlap:
            raise ValueError(f"Keys cannot be both core and best-effort: {', '.join(sorted(overlap))}")

        fallbacks = {key: spec.fallback for key, spec in core.items()}
        fallbacks.update({key: spec.fallback for key, spec in best_effort.items()})
        result = AggregateResult(subject, fallbacks)
        for listener in self._listeners:
            result.subscribe(listener)

        if core:
            await settle_all(core, result, abort)
            failed = [key for key in core if result.status(key) is not SourceStatus.SUCCESS]
            if failed:
                logger.error(f"[{subject}] core data unavailable: {', '.join(failed)}")
                raise AggregateFetchError(subject, failed, result)

        if best_effort:
            await settle_all(best_effort, result, abort)

        result.freeze()
        self._log_summary(result)
        return result

    @staticmethod
    def _log_summary(result: AggregateResult) -> None:
        counts: Dict[str, int] = {}
        for status in result.statuses.values():
            counts[status.value] = counts.get(status.value, 0) + 1
        summary = ", ".join(f"{name}={count}" for name, count in sorted(counts.items()))
        logger.info(f"[{result.subject}] fetch complete: {summary}")
