"""Tests for the research service and run supervision."""

import asyncio
import json
from types import SimpleNamespace

import pytest

from research_desk.config import Settings
from research_desk.entities import ArtifactKind, MergedCollection, SourceStatus
from research_desk.errors import AggregateFetchError, ConfigurationError, OperationAborted, ProviderError
from research_desk.llm import CompletionClient
from research_desk.services import ResearchService, RunSupervisor
from research_desk.store import BoundedCapacityStore


class FakeFMP:
    """Canned FMP answers; names in `failing` raise a provider error."""

    def __init__(self, failing=(), delay=0.0):
        self.failing = set(failing)
        self.delay = delay
        self.calls = []

    async def _answer(self, name, value):
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if name in self.failing:
            raise ProviderError("fmp", f"{name} unavailable", 503)
        return value

    async def profile(self, symbol, abort=None):
        return await self._answer("profile", {"symbol": symbol, "companyName": "Apple Inc."})

    async def quote(self, symbol, abort=None):
        return await self._answer("quote", {"symbol": symbol, "price": 190.5})

    async def statements(self, symbol, kind, abort=None):
        return await self._answer(kind, [{"revenue": 110.0}, {"revenue": 100.0}])

    async def ttm(self, symbol, kind, abort=None):
        return await self._answer(f"{kind}-ttm", [])

    async def balance_sheet(self, symbol, abort=None):
        return await self._answer("balance", [{"totalAssets": 1.0}])

    async def news(self, symbol, abort=None):
        return await self._answer("news", [{"title": "headline"}])

    async def peers(self, symbol, abort=None):
        return await self._answer("peers", ["MSFT"])

    async def transcripts(self, symbol, abort=None):
        return await self._answer("transcripts", [])

    async def filings(self, symbol, abort=None):
        return await self._answer("filings", [])

    async def insider_trading(self, symbol, abort=None):
        return await self._answer("insider", [{"reportingName": "Cook Timothy"}])

    async def acquisition_ownership(self, symbol, abort=None):
        return await self._answer("ownership", [])

    async def senate_trades(self, symbol, abort=None):
        return await self._answer("senate", [{"name": "Jane Doe", "position": "Senator"}])

    async def house_trades(self, symbol, abort=None):
        return await self._answer("house", [])

    async def aclose(self):
        pass


class FakeFinnhub:
    def __init__(self, failing=()):
        self.failing = set(failing)

    async def _answer(self, name, value):
        if name in self.failing:
            raise ProviderError("finnhub", f"{name} unavailable", 429)
        return value

    async def company_news(self, symbol, from_date=None, to_date=None, abort=None):
        return await self._answer("news", [{"headline": "x"}])

    async def social_sentiment(self, symbol, from_date=None, to_date=None, abort=None):
        return await self._answer("sentiment", [])

    async def congressional_trading(self, symbol, from_date=None, to_date=None, abort=None):
        return await self._answer("congressional", [{"name": "Ann Poe", "position": "Senator"}])

    async def aclose(self):
        pass


class FakeCompletions:
    def __init__(self, reply):
        self.reply = reply

    async def create(self, **kwargs):
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def completion(reply):
    client = SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions(reply)))
    return CompletionClient(client, model="gpt-4o", fallback_model=None)


class TestRunSupervisor:
    """Test channel supersession."""

    def test_new_run_aborts_previous(self):
        supervisor = RunSupervisor()
        first = supervisor.start("company-view")
        second = supervisor.start("company-view")

        assert first.is_set()
        assert not second.is_set()

    def test_channels_are_independent(self):
        supervisor = RunSupervisor()
        a = supervisor.start("view-a")
        supervisor.start("view-b")
        assert not a.is_set()

    def test_finish_only_clears_own_run(self):
        supervisor = RunSupervisor()
        first = supervisor.start("view")
        supervisor.start("view")

        supervisor.finish("view", first)

        assert supervisor.active("view")

    def test_run_context(self):
        supervisor = RunSupervisor()
        with supervisor.run("view") as abort:
            assert supervisor.active("view")
            assert not abort.is_set()
        assert not supervisor.active("view")


class TestFetchAggregate:
    """Test the company view fetch."""

    @pytest.mark.asyncio
    async def test_all_slices_present(self):
        service = ResearchService(Settings(), store=None, fmp=FakeFMP(failing={"news"}))

        result = await service.fetch_aggregate("aapl")

        assert result.subject == "AAPL"
        assert len(result.keys()) == 14
        assert result.status("profile") is SourceStatus.SUCCESS
        assert result.status("news") is SourceStatus.ERROR
        assert result["news"] == []
        assert result.status("transcripts") is SourceStatus.EMPTY

    @pytest.mark.asyncio
    async def test_core_failure_is_fatal(self):
        fmp = FakeFMP(failing={"quote"})
        service = ResearchService(Settings(), store=None, fmp=fmp)

        with pytest.raises(AggregateFetchError) as exc_info:
            await service.fetch_aggregate("AAPL")

        assert exc_info.value.failed_keys == ["quote"]
        assert set(fmp.calls) == {"profile", "quote"}

    @pytest.mark.asyncio
    async def test_core_keys_configurable(self):
        fmp = FakeFMP(failing={"quote"})
        service = ResearchService(Settings(core_keys=["profile"]), store=None, fmp=fmp)

        result = await service.fetch_aggregate("AAPL")

        assert result.status("quote") is SourceStatus.ERROR

    @pytest.mark.asyncio
    async def test_missing_fmp_key(self):
        service = ResearchService(Settings(), store=None)
        with pytest.raises(ConfigurationError):
            await service.fetch_aggregate("AAPL")

    @pytest.mark.asyncio
    async def test_newer_run_on_channel_aborts_older(self):
        fmp = FakeFMP(delay=0.05)
        service = ResearchService(Settings(), store=None, fmp=fmp)

        first = asyncio.ensure_future(service.fetch_aggregate("AAPL", channel="company-view"))
        await asyncio.sleep(0.01)
        fmp.delay = 0.0
        second = await service.fetch_aggregate("MSFT", channel="company-view")

        assert second.subject == "MSFT"
        with pytest.raises(OperationAborted):
            await first
        assert not service.supervisor.active("company-view")


class TestAlternativeData:
    """Test the alternative-data view."""

    @pytest.mark.asyncio
    async def test_slices_degrade_independently(self):
        service = ResearchService(
            Settings(), store=None, fmp=FakeFMP(), finnhub=FakeFinnhub(failing={"sentiment"})
        )

        result = await service.fetch_alternative_data("AAPL", "2024-01-01", "2024-06-30")

        assert result.status("news") is SourceStatus.SUCCESS
        assert result.status("sentiment") is SourceStatus.ERROR
        assert result.status("ownership") is SourceStatus.EMPTY
        congressional = result["congressional"]
        assert isinstance(congressional, MergedCollection)
        assert {r.get("position") for r in congressional} == {"Senator (Senate)", "Senator"}

    @pytest.mark.asyncio
    async def test_without_finnhub(self):
        service = ResearchService(Settings(), store=None, fmp=FakeFMP())

        result = await service.fetch_alternative_data("AAPL")

        assert result.status("news") is SourceStatus.ERROR
        assert "not configured" in result.errors["news"]
        assert result.status("congressional") is SourceStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_all_congressional_feeds_failed(self):
        service = ResearchService(
            Settings(), store=None,
            fmp=FakeFMP(failing={"senate", "house"}), finnhub=FakeFinnhub(failing={"congressional"}),
        )

        result = await service.fetch_alternative_data("AAPL")

        assert result.status("congressional") is SourceStatus.ERROR
        assert len(result["congressional"]) == 0


class TestGeneration:
    """Test report and prediction generation through the service."""

    @pytest.mark.asyncio
    async def test_generate_prediction(self):
        reply = json.dumps({"sentimentAnalysis": "Positive", "confidenceLevel": 70})
        service = ResearchService(Settings(), store=None, fmp=FakeFMP(), completion=completion(reply))

        outcome = await service.generate_prediction("aapl")

        assert outcome.data["symbol"] == "AAPL"
        assert outcome.data["currentPrice"] == 190.5
        assert outcome.data["confidenceLevel"] == 70

    @pytest.mark.asyncio
    async def test_generate_report_requires_completion(self):
        service = ResearchService(Settings(), store=None, fmp=FakeFMP())
        with pytest.raises(ConfigurationError):
            await service.generate_report("AAPL")


class TestArtifacts:
    """Test artifact pass-through and maintenance."""

    @pytest.mark.asyncio
    async def test_save_list_delete(self, database, clock):
        store = BoundedCapacityStore(database, capacity=2, clock=clock)
        service = ResearchService(Settings(), store=store)

        artifact_id = await service.save_artifact("u1", ArtifactKind.PREDICTION, "aapl", {"v": 1})
        listed = await service.list_artifacts("u1", "prediction")

        assert [a.artifact_id for a in listed] == [artifact_id]
        assert (await service.get_artifact(artifact_id)).symbol == "AAPL"
        assert await service.delete_artifact(artifact_id) is True

    @pytest.mark.asyncio
    async def test_run_maintenance(self, database, clock):
        store = BoundedCapacityStore(database, retention_days=1, clock=clock)
        service = ResearchService(Settings(), store=store)
        await service.save_artifact("u1", "report", "AAPL", {})
        clock.advance(days=2)

        assert await service.run_maintenance() == {"expired_artifacts": 1, "cache_entries": 0}
