"""Merge same-domain records from independently-schemed providers."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from research_desk.entities import MergedCollection, SourceStatus, SourceTaggedRecord
from research_desk.errors import AllSourcesFailedError, OperationAborted
from research_desk.retry import race_abort


logger = logging.getLogger(__name__)

Disambiguator = Callable[[Dict[str, Any]], Dict[str, Any]]


@dataclass
class ProviderFeed:
    """
    One provider's contribution to a merged domain.

    Representation Invariants:
    - source is a non-empty provider identifier, unique within a merge
    - fetch returns a list of plain dict records (or None for "no data")
    """

    source: str
    fetch: Callable[[], Awaitable[Optional[List[Dict[str, Any]]]]]
    disambiguate: Optional[Disambiguator] = None

    def __post_init__(self) -> None:
        if not self.source:
            raise ValueError("ProviderFeed.source cannot be empty")


@dataclass
class SourceContribution:
    """The settled outcome of one feed: its status, records and error (if any)."""

    source: str
    status: SourceStatus
    records: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    disambiguate: Optional[Disambiguator] = None


def qualify_field(field_name: str, qualifier: str) -> Disambiguator:
    """
    Build a disambiguator that appends "(qualifier)" to a field.

    Used to keep overlapping fields distinguishable across feeds, e.g.
    position "Senator" from the Senate feed becomes "Senator (Senate)".
    An already-qualified value is left alone.
    """
    suffix = f"({qualifier})"

    def disambiguate(record: Dict[str, Any]) -> Dict[str, Any]:
        updated = dict(record)
        value = str(updated.get(field_name) or "").strip()
        if value.endswith(suffix):
            return updated
        updated[field_name] = f"{value} {suffix}".strip()
        return updated

    return disambiguate


def tag_records(
    source: str,
    records: Iterable[Dict[str, Any]],
    disambiguate: Optional[Disambiguator] = None
) -> List[SourceTaggedRecord]:
    """
    Tag provider records with their source, applying disambiguation first.

    A provider-supplied "source" field is dropped in favour of the tag.
    """
    tagged: List[SourceTaggedRecord] = []
    for record in records:
        if not isinstance(record, dict):
            continue
        fields = disambiguate(record) if disambiguate else dict(record)
        fields.pop("source", None)
        tagged.append(SourceTaggedRecord(source=source, fields=fields))
    return tagged


def aggregate_status(statuses: Iterable[SourceStatus], has_records: Optional[bool] = None) -> SourceStatus:
    """
    Combine per-source statuses into the status of the merged view.

    - loading while any source is pending or loading
    - error only when every source errored
    - otherwise success, unless no source produced records (then empty)

    Args:
        statuses: One status per contributing source
        has_records: Whether the merged collection holds any records; when
            omitted, any SUCCESS source counts as having records
    """
    statuses = list(statuses)
    if not statuses:
        return SourceStatus.EMPTY
    if any(s in (SourceStatus.PENDING, SourceStatus.LOADING) for s in statuses):
        return SourceStatus.LOADING
    if all(s is SourceStatus.ERROR for s in statuses):
        return SourceStatus.ERROR
    if has_records is None:
        has_records = any(s is SourceStatus.SUCCESS for s in statuses)
    return SourceStatus.SUCCESS if has_records else SourceStatus.EMPTY


def merge_collections(domain: str, contributions: Sequence[SourceContribution]) -> MergedCollection:
    """
    Concatenate contributions (in the given order) into one tagged collection.

    Errored or empty contributions add no records and never affect the others.
    """
    sources = [c.source for c in contributions]
    if len(set(sources)) != len(sources):
        raise ValueError(f"Duplicate sources in merge for {domain}: {sources}")

    merged = MergedCollection(domain=domain)
    for contribution in contributions:
        merged.source_statuses[contribution.source] = contribution.status
        if contribution.status is SourceStatus.ERROR:
            merged.errors[contribution.source] = contribution.error or "unknown error"
            continue
        merged.records.extend(
            tag_records(contribution.source, contribution.records, contribution.disambiguate)
        )

    merged.status = aggregate_status(merged.source_statuses.values(), has_records=bool(merged.records))
    return merged


class MergeEngine:
    """
    Fetches every feed of a domain concurrently and merges the results.

    Each feed is isolated: a failure is recorded against that source only.
    Records are concatenated in fetch-completion order.
    """

    async def _settle_feed(self, feed: ProviderFeed) -> SourceContribution:
        try:
            records = await feed.fetch()
        except OperationAborted:
            raise
        except Exception as e:
            logger.warning(f"Feed {feed.source} failed: {e}")
            return SourceContribution(feed.source, SourceStatus.ERROR, error=str(e) or type(e).__name__)

        if not records:
            return SourceContribution(feed.source, SourceStatus.EMPTY, disambiguate=feed.disambiguate)
        if not isinstance(records, list):
            return SourceContribution(
                feed.source, SourceStatus.ERROR,
                error=f"expected a list of records, got {type(records).__name__}"
            )
        return SourceContribution(
            feed.source, SourceStatus.SUCCESS, records=records, disambiguate=feed.disambiguate
        )

    async def fetch_and_merge(
        self,
        feeds: Sequence[ProviderFeed],
        domain: str = "merged",
        abort: Optional[asyncio.Event] = None,
        raise_if_all_failed: bool = True
    ) -> MergedCollection:
        """
        Fetch all feeds concurrently and merge them.

        Preconditions:
        - feeds is non-empty with unique sources

        Postconditions:
        - Returns a MergedCollection whose status follows aggregate_status
        - Raises AllSourcesFailedError when every feed failed and
          raise_if_all_failed is True
        - Raises OperationAborted if abort fires first

        Args:
            feeds: Provider feeds to fetch
            domain: Name of the merged domain (for logs and errors)
            abort: Cooperative cancellation signal
            raise_if_all_failed: Raise instead of returning an ERROR collection

        Returns:
            The merged collection
        """
        if not feeds:
            raise ValueError(f"No feeds given for {domain}")

        contributions: List[SourceContribution] = []

        async def collect() -> None:
            tasks = [asyncio.ensure_future(self._settle_feed(feed)) for feed in feeds]
            try:
                for next_done in asyncio.as_completed(tasks):
                    contributions.append(await next_done)
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()

        await race_abort(collect(), abort, f"merge {domain}")

        merged = merge_collections(domain, contributions)
        logger.info(
            f"Merged {domain}: {len(merged)} records from "
            f"{', '.join(f'{s}={st.value}' for s, st in merged.source_statuses.items())}"
        )

        if merged.status is SourceStatus.ERROR and raise_if_all_failed:
            raise AllSourcesFailedError(domain, merged.errors)
        return merged


def merge_from_results(
    domain: str,
    results: Mapping[str, Any],
    statuses: Mapping[str, SourceStatus],
    disambiguators: Optional[Mapping[str, Disambiguator]] = None,
    errors: Optional[Mapping[str, str]] = None
) -> MergedCollection:
    """
    Merge collections that were fetched elsewhere (e.g. by a fan-out run).

    Sources still loading make the merged status LOADING.
    """
    disambiguators = disambiguators or {}
    errors = errors or {}
    contributions = []
    for source, status in statuses.items():
        records = results.get(source) if status is SourceStatus.SUCCESS else None
        contributions.append(SourceContribution(
            source=source,
            status=status,
            records=list(records or []),
            error=errors.get(source),
            disambiguate=disambiguators.get(source),
        ))
    return merge_collections(domain, contributions)


# Chamber qualifiers keep Senate and House positions apart once merged
senate_disambiguator = qualify_field("position", "Senate")
house_disambiguator = qualify_field("position", "House")

CONGRESSIONAL_DOMAIN = "congressional"


def congressional_feeds(
    fmp,
    finnhub,
    symbol: str,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    abort: Optional[asyncio.Event] = None
) -> List[ProviderFeed]:
    """
    The standard feeds for congressional trading disclosures.

    FMP Senate and House trades are position-qualified by chamber; Finnhub
    records already carry their own position text and are left as is.
    A client passed as None contributes no feed.

    Args:
        fmp: FMPClient (or None)
        finnhub: FinnhubClient (or None)
        symbol: Ticker to look up
        from_date: Start of the Finnhub window (YYYY-MM-DD)
        to_date: End of the Finnhub window (YYYY-MM-DD)
        abort: Cooperative cancellation signal passed to the clients
    """
    feeds: List[ProviderFeed] = []
    if fmp is not None:
        feeds.append(ProviderFeed(
            source="fmp_senate",
            fetch=lambda: fmp.senate_trades(symbol, abort=abort),
            disambiguate=senate_disambiguator,
        ))
        feeds.append(ProviderFeed(
            source="fmp_house",
            fetch=lambda: fmp.house_trades(symbol, abort=abort),
            disambiguate=house_disambiguator,
        ))
    if finnhub is not None:
        feeds.append(ProviderFeed(
            source="finnhub",
            fetch=lambda: finnhub.congressional_trading(symbol, from_date, to_date, abort=abort),
        ))
    return feeds
