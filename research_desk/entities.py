"""Core entity classes: SourceStatus, FetchSpec, SourceTaggedRecord, MergedCollection, SavedArtifact, etc."""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional


# A FetchKey names one logical data slice within a run ("profile", "news", ...)
FetchKey = str


class SourceStatus(enum.Enum):
    """
    Lifecycle state of one data slice within one run.

    Legal transitions: PENDING -> LOADING -> {SUCCESS, EMPTY, ERROR}.
    """

    PENDING = "pending"
    LOADING = "loading"
    SUCCESS = "success"
    EMPTY = "empty"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SourceStatus.SUCCESS, SourceStatus.EMPTY, SourceStatus.ERROR)


class ArtifactKind(enum.Enum):
    """Types of user-saved artifacts. Capacity is enforced per owner per kind."""

    REPORT = "report"
    PREDICTION = "prediction"


@dataclass
class FetchSpec:
    """
    One fetch to run inside a fan-out batch.

    Representation Invariants:
    - operation is a zero-argument callable returning an awaitable
    - fallback is the value substituted when the operation fails
    - timeout, if set, is positive (seconds)
    """

    operation: Callable[[], Awaitable[Any]]
    fallback: Any = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if not callable(self.operation):
            raise ValueError("FetchSpec.operation must be callable")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("FetchSpec.timeout must be positive")


@dataclass(frozen=True)
class SourceTaggedRecord:
    """
    A domain record annotated with the provider it came from.

    Produced only by the merge engine; raw provider records carry no source.
    """

    source: str
    fields: Dict[str, Any]

    def get(self, name: str, default: Any = None) -> Any:
        if name == "source":
            return self.source
        return self.fields.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.fields)
        data["source"] = self.source
        return data


@dataclass
class MergedCollection:
    """
    Records for one domain concatenated from every contributing provider.

    Ordering is fetch-completion order unless sorted_by() is applied.
    No deduplication is performed across sources.

    Representation Invariants:
    - every record's source appears in source_statuses
    - status is the aggregate of source_statuses (see merge.aggregate_status)
    """

    domain: str
    records: List[SourceTaggedRecord] = field(default_factory=list)
    source_statuses: Dict[str, SourceStatus] = field(default_factory=dict)
    status: SourceStatus = SourceStatus.PENDING
    errors: Dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def sources(self) -> List[str]:
        """Sources that contributed at least one record, in first-seen order."""
        seen: List[str] = []
        for record in self.records:
            if record.source not in seen:
                seen.append(record.source)
        return seen

    def sorted_by(self, field_name: str, reverse: bool = False) -> "MergedCollection":
        """
        Return a copy ordered by a record field.

        Records missing the field sort last regardless of direction.
        """
        present = [r for r in self.records if r.get(field_name) is not None]
        missing = [r for r in self.records if r.get(field_name) is None]
        present.sort(key=lambda r: r.get(field_name), reverse=reverse)
        return MergedCollection(
            domain=self.domain,
            records=present + missing,
            source_statuses=dict(self.source_statuses),
            status=self.status,
            errors=dict(self.errors),
        )

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.records]


@dataclass
class SavedArtifact:
    """
    A report or prediction saved by a user.

    Representation Invariants:
    - symbol is uppercase and non-empty
    - at most one artifact per (owner_id, kind, symbol)
    - created_at <= expires_at
    """

    artifact_id: str
    owner_id: str
    kind: ArtifactKind
    symbol: str
    payload: Dict[str, Any]
    created_at: datetime
    expires_at: datetime
    company_name: Optional[str] = None

    def __post_init__(self) -> None:
        self.symbol = self.symbol.upper().strip()
        if not self.symbol:
            raise ValueError("Artifact symbol cannot be empty")
        if not self.owner_id:
            raise ValueError("Artifact owner_id cannot be empty")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.artifact_id,
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "symbol": self.symbol,
            "company_name": self.company_name,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class RetryState:
    """Attempt bookkeeping for a single resilient call. Discarded when the call ends."""

    max_attempts: int
    attempt: int = 0
    last_delay: float = 0.0
    last_error: Optional[BaseException] = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts
