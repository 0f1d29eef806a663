"""Per-key loading status for one orchestration run."""

import logging
from typing import Callable, Dict, Iterable, List

from research_desk.entities import SourceStatus
from research_desk.errors import InvalidTransitionError


logger = logging.getLogger(__name__)

StatusListener = Callable[[str, SourceStatus], None]

_ALLOWED = {
    SourceStatus.PENDING: {SourceStatus.LOADING},
    SourceStatus.LOADING: {SourceStatus.SUCCESS, SourceStatus.EMPTY, SourceStatus.ERROR},
    SourceStatus.SUCCESS: set(),
    SourceStatus.EMPTY: set(),
    SourceStatus.ERROR: set(),
}


class StatusTracker:
    """
    Records the lifecycle state of each data slice in a single run.

    Observers registered with subscribe() see every transition as it
    happens, so a caller can render slices progressively instead of
    waiting for the whole run.

    Representation Invariants:
    - _statuses has exactly the keys given at construction
    - every key moves only forward: pending -> loading -> success|empty|error
    - a terminal key is never changed again
    """

    def __init__(self, keys: Iterable[str]) -> None:
        """
        Initialize every key as pending.

        Raises:
            ValueError: If a key is empty or repeated
        """
        self._statuses: Dict[str, SourceStatus] = {}
        for key in keys:
            if not key:
                raise ValueError("Status keys cannot be empty")
            if key in self._statuses:
                raise ValueError(f"Duplicate status key: {key}")
            self._statuses[key] = SourceStatus.PENDING
        self._listeners: List[StatusListener] = []

    def __contains__(self, key: str) -> bool:
        return key in self._statuses

    def keys(self) -> List[str]:
        return list(self._statuses)

    def get(self, key: str) -> SourceStatus:
        return self._statuses[key]

    def set_status(self, key: str, status: SourceStatus) -> None:
        """
        Move `key` to `status`.

        Raises:
            KeyError: If key was not registered
            InvalidTransitionError: If the move is not forward by one step
        """
        if key not in self._statuses:
            raise KeyError(f"Unknown status key: {key}")

        current = self._statuses[key]
        if status not in _ALLOWED[current]:
            raise InvalidTransitionError(key, current, status)

        self._statuses[key] = status
        for listener in list(self._listeners):
            try:
                listener(key, status)
            except Exception as e:
                logger.warning(f"Status listener failed for {key}={status.value}: {e}")

    def snapshot(self) -> Dict[str, SourceStatus]:
        """Copy of the current status mapping."""
        return dict(self._statuses)

    def as_strings(self) -> Dict[str, str]:
        return {key: status.value for key, status in self._statuses.items()}

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """
        Register a transition observer.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def is_complete(self) -> bool:
        return all(status.is_terminal for status in self._statuses.values())

    def keys_with(self, status: SourceStatus) -> List[str]:
        return [key for key, s in self._statuses.items() if s is status]
