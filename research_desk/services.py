"""Outward-facing operations: aggregate fetches, generation and saved artifacts."""

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from research_desk.cache import ResponseCache
from research_desk.config import Settings
from research_desk.database import Database
from research_desk.entities import FetchSpec, MergedCollection, SavedArtifact
from research_desk.errors import ConfigurationError
from research_desk.fanout import AggregateResult, FanOutOrchestrator
from research_desk.llm import CompletionClient, PredictionGenerator, ReportGenerator
from research_desk.merge import CONGRESSIONAL_DOMAIN, MergeEngine, congressional_feeds
from research_desk.providers import FinnhubClient, FMPClient, is_retryable
from research_desk.repair import RepairOutcome
from research_desk.retry import ResilientCall
from research_desk.store import BoundedCapacityStore, KindLike


logger = logging.getLogger(__name__)


class RunSupervisor:
    """
    One live run per channel (a view or dashboard panel).

    Starting a run on a channel sets the abort signal of the run it
    supersedes, so a stale fetch stops instead of racing the new one.
    """

    def __init__(self) -> None:
        self._current: Dict[str, asyncio.Event] = {}

    def start(self, channel: str) -> asyncio.Event:
        previous = self._current.get(channel)
        if previous is not None and not previous.is_set():
            logger.info(f"Superseding active run on channel {channel}")
            previous.set()
        abort = asyncio.Event()
        self._current[channel] = abort
        return abort

    def finish(self, channel: str, abort: asyncio.Event) -> None:
        if self._current.get(channel) is abort:
            del self._current[channel]

    def active(self, channel: str) -> bool:
        return channel in self._current

    @contextmanager
    def run(self, channel: str) -> Iterator[asyncio.Event]:
        abort = self.start(channel)
        try:
            yield abort
        finally:
            self.finish(channel, abort)


class ResearchService:
    """
    Coordinates providers, the fan-out orchestrator, the generators and the store.

    Provider and generator clients are optional so the service still runs
    (with degraded slices) when some API keys are not configured.
    """

    def __init__(
        self,
        settings: Settings,
        store: BoundedCapacityStore,
        fmp: Optional[FMPClient] = None,
        finnhub: Optional[FinnhubClient] = None,
        completion: Optional[CompletionClient] = None,
        database: Optional[Database] = None,
        cache: Optional[ResponseCache] = None,
        orchestrator: Optional[FanOutOrchestrator] = None,
        merge_engine: Optional[MergeEngine] = None,
        supervisor: Optional[RunSupervisor] = None
    ) -> None:
        self._settings = settings
        self._store = store
        self._fmp = fmp
        self._finnhub = finnhub
        self._completion = completion
        self._database = database
        self._cache = cache
        self._orchestrator = orchestrator or FanOutOrchestrator()
        self._merge = merge_engine or MergeEngine()
        self._supervisor = supervisor or RunSupervisor()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResearchService":
        """Build the service and all of its clients from configuration."""
        database = Database(settings.database_url)
        cache = ResponseCache(database, enabled=settings.cache_enabled)

        def client_kwargs() -> Dict[str, Any]:
            return {
                "cache": cache,
                "cache_ttls": settings.cache_ttls,
                "retry": ResilientCall.from_settings(settings, retry_on=is_retryable),
            }

        fmp = None
        if settings.fmp_api_key:
            fmp = FMPClient.from_settings(settings, **client_kwargs())
        else:
            logger.warning("FMP_API_KEY not set; market data fetches will fail")

        finnhub = None
        if settings.finnhub_api_key:
            finnhub = FinnhubClient.from_settings(settings, **client_kwargs())
        else:
            logger.warning("FINNHUB_API_KEY not set; Finnhub slices will be unavailable")

        completion = None
        if settings.openai_api_key:
            completion = CompletionClient.from_settings(settings)
        else:
            logger.warning("OPENAI_API_KEY not set; report and prediction generation disabled")

        return cls(
            settings,
            store=BoundedCapacityStore.from_settings(database, settings),
            fmp=fmp,
            finnhub=finnhub,
            completion=completion,
            database=database,
            cache=cache,
        )

    @property
    def supervisor(self) -> RunSupervisor:
        return self._supervisor

    async def startup(self) -> None:
        if self._database is not None:
            await self._database.create_tables()

    async def aclose(self) -> None:
        for client in (self._fmp, self._finnhub):
            if client is not None:
                await client.aclose()
        if self._database is not None:
            await self._database.dispose()

    def _require_fmp(self) -> FMPClient:
        if self._fmp is None:
            raise ConfigurationError("FMP API key is not configured")
        return self._fmp

    def _require_completion(self) -> CompletionClient:
        if self._completion is None:
            raise ConfigurationError("OpenAI API key is not configured")
        return self._completion

    def aggregate_specs(self, symbol: str, abort: Optional[asyncio.Event] = None) -> Dict[str, FetchSpec]:
        """Every slice of the company view, keyed by fetch key."""
        fmp = self._require_fmp()
        return {
            "profile": FetchSpec(lambda: fmp.profile(symbol, abort=abort), fallback=None),
            "quote": FetchSpec(lambda: fmp.quote(symbol, abort=abort), fallback=None),
            "income": FetchSpec(lambda: fmp.statements(symbol, "income-statement", abort=abort), fallback=[]),
            "incomeTTM": FetchSpec(lambda: fmp.ttm(symbol, "income-statement", abort=abort), fallback=[]),
            "balance": FetchSpec(lambda: fmp.balance_sheet(symbol, abort=abort), fallback=[]),
            "balanceTTM": FetchSpec(lambda: fmp.ttm(symbol, "balance-sheet-statement", abort=abort), fallback=[]),
            "cashflow": FetchSpec(lambda: fmp.statements(symbol, "cash-flow-statement", abort=abort), fallback=[]),
            "cashflowTTM": FetchSpec(lambda: fmp.ttm(symbol, "cash-flow-statement", abort=abort), fallback=[]),
            "ratios": FetchSpec(lambda: fmp.statements(symbol, "ratios", abort=abort), fallback=[]),
            "ratiosTTM": FetchSpec(lambda: fmp.ttm(symbol, "ratios", abort=abort), fallback=[]),
            "news": FetchSpec(lambda: fmp.news(symbol, abort=abort), fallback=[]),
            "peers": FetchSpec(lambda: fmp.peers(symbol, abort=abort), fallback=[]),
            "transcripts": FetchSpec(lambda: fmp.transcripts(symbol, abort=abort), fallback=[]),
            "filings": FetchSpec(lambda: fmp.filings(symbol, abort=abort), fallback=[]),
        }

    async def fetch_aggregate(
        self,
        symbol: str,
        abort: Optional[asyncio.Event] = None,
        channel: Optional[str] = None
    ) -> AggregateResult:
        """
        Fetch every slice of the company view for `symbol`.

        Raises:
            AggregateFetchError: If a core slice (profile, quote) is unavailable
            OperationAborted: If the run was aborted or superseded
        """
        symbol = symbol.upper()
        if abort is None and channel is not None:
            with self._supervisor.run(channel) as run_abort:
                return await self.fetch_aggregate(symbol, abort=run_abort)

        specs = self.aggregate_specs(symbol, abort)
        core_keys = set(self._settings.core_keys)
        core = {k: s for k, s in specs.items() if k in core_keys}
        best_effort = {k: s for k, s in specs.items() if k not in core_keys}
        return await self._orchestrator.run(symbol, core, best_effort, abort)

    async def fetch_alternative_data(
        self,
        symbol: str,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        abort: Optional[asyncio.Event] = None,
        channel: Optional[str] = None
    ) -> AggregateResult:
        """
        Fetch the alternative-data view: news, sentiment, insider and
        ownership filings, and merged congressional trades.

        Every slice is best-effort; the congressional slice is an error only
        when every disclosure provider failed.
        """
        symbol = symbol.upper()
        if abort is None and channel is not None:
            with self._supervisor.run(channel) as run_abort:
                return await self.fetch_alternative_data(symbol, from_date, to_date, abort=run_abort)

        fmp, finnhub = self._fmp, self._finnhub

        async def unavailable(name: str) -> Any:
            raise ConfigurationError(f"{name} API key is not configured")

        specs: Dict[str, FetchSpec] = {
            "news": FetchSpec(
                (lambda: finnhub.company_news(symbol, from_date, to_date, abort=abort))
                if finnhub else (lambda: unavailable("Finnhub")),
                fallback=[],
            ),
            "sentiment": FetchSpec(
                (lambda: finnhub.social_sentiment(symbol, from_date, to_date, abort=abort))
                if finnhub else (lambda: unavailable("Finnhub")),
                fallback=[],
            ),
            "insider": FetchSpec(
                (lambda: fmp.insider_trading(symbol, abort=abort)) if fmp else (lambda: unavailable("FMP")),
                fallback=[],
            ),
            "ownership": FetchSpec(
                (lambda: fmp.acquisition_ownership(symbol, abort=abort)) if fmp else (lambda: unavailable("FMP")),
                fallback=[],
            ),
            "congressional": FetchSpec(
                lambda: self.fetch_congressional_trades(symbol, from_date, to_date, abort=abort),
                fallback=MergedCollection(domain=CONGRESSIONAL_DOMAIN),
            ),
        }
        return await self._orchestrator.run(symbol, {}, specs, abort)

    async def fetch_congressional_trades(
        self,
        symbol: str,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        abort: Optional[asyncio.Event] = None
    ) -> MergedCollection:
        """
        Senate, House and Finnhub disclosures merged into one collection.

        Raises:
            ConfigurationError: If no disclosure provider is configured
            AllSourcesFailedError: If every provider failed
        """
        feeds = congressional_feeds(self._fmp, self._finnhub, symbol.upper(), from_date, to_date, abort)
        if not feeds:
            raise ConfigurationError("No congressional trading provider is configured")
        return await self._merge.fetch_and_merge(feeds, CONGRESSIONAL_DOMAIN, abort)

    async def generate_report(
        self,
        symbol: str,
        report_type: str = "standard",
        abort: Optional[asyncio.Event] = None,
        channel: Optional[str] = None
    ) -> RepairOutcome:
        """
        Fetch the company view and generate a repaired research report from it.

        Raises:
            AggregateFetchError: If core data is unavailable
            MalformedResponseError: If the generator returned no JSON object
        """
        symbol = symbol.upper()
        if abort is None and channel is not None:
            with self._supervisor.run(channel) as run_abort:
                return await self.generate_report(symbol, report_type, abort=run_abort)

        generator = ReportGenerator(self._require_completion())
        aggregate = await self.fetch_aggregate(symbol, abort=abort)
        return await generator.generate(symbol, aggregate, report_type, abort=abort)

    async def generate_prediction(
        self,
        symbol: str,
        abort: Optional[asyncio.Event] = None,
        channel: Optional[str] = None
    ) -> RepairOutcome:
        """Fetch the company view and generate a repaired price prediction."""
        symbol = symbol.upper()
        if abort is None and channel is not None:
            with self._supervisor.run(channel) as run_abort:
                return await self.generate_prediction(symbol, abort=run_abort)

        generator = PredictionGenerator(self._require_completion())
        aggregate = await self.fetch_aggregate(symbol, abort=abort)
        return await generator.generate(symbol, aggregate, abort=abort)

    async def save_artifact(
        self,
        owner_id: str,
        kind: KindLike,
        symbol: str,
        payload: Dict[str, Any],
        company_name: Optional[str] = None
    ) -> str:
        return await self._store.save(owner_id, kind, symbol, payload, company_name)

    async def delete_artifact(self, artifact_id: str) -> bool:
        return await self._store.delete(artifact_id)

    async def get_artifact(self, artifact_id: str) -> Optional[SavedArtifact]:
        return await self._store.get(artifact_id)

    async def list_artifacts(self, owner_id: str, kind: KindLike) -> List[SavedArtifact]:
        return await self._store.list(owner_id, kind)

    async def run_maintenance(self) -> Dict[str, int]:
        """Purge expired artifacts and trim the response cache."""
        purged = await self._store.purge_expired()
        trimmed = 0
        if self._cache is not None:
            trimmed = await self._cache.purge_lru(self._settings.cache_max_entries)
        return {"expired_artifacts": purged, "cache_entries": trimmed}
