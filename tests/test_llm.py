"""Tests for generative completions and the report/prediction generators."""

import json
from datetime import date
from types import SimpleNamespace

import httpx
import pytest

from research_desk.config import Settings
from research_desk.errors import MalformedResponseError, ProviderError
from research_desk.llm import (
    CompletionClient,
    PredictionGenerator,
    ReportGenerator,
    build_financial_context,
    is_reasoning_model,
)
from research_desk.repair import REPORT_SECTIONS, placeholder
from research_desk.retry import ResilientCall


class FakeCompletions:
    """Stands in for AsyncOpenAI().chat.completions."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        message = SimpleNamespace(content=reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_openai(*replies):
    completions = FakeCompletions(replies)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def completion_client(client, model="o3-mini", fallback_model="gpt-4o"):
    async def no_sleep(delay):
        pass

    retry = ResilientCall(max_attempts=2, sleep=no_sleep, jitter=lambda a, b: 0.0)
    return CompletionClient(client, model=model, fallback_model=fallback_model, retry=retry)


AGGREGATE = {
    "profile": {"companyName": "Apple Inc.", "sector": "Technology"},
    "quote": {"price": 190.5},
    "income": [{"revenue": 110.0}, {"revenue": 100.0}],
    "cashflow": [],
    "news": [{"title": "Record quarter", "publishedDate": "2024-05-01", "text": "long body"}],
    "peers": ["MSFT"],
}


class TestCompletionClient:
    """Test model parameter selection and fallback."""

    def test_reasoning_models(self):
        assert is_reasoning_model("o3-mini")
        assert is_reasoning_model("o1")
        assert not is_reasoning_model("gpt-4o")

    @pytest.mark.asyncio
    async def test_reasoning_model_parameters(self):
        client, completions = fake_openai('{"ok": true}')

        text = await completion_client(client).complete(
            [{"role": "user", "content": "hi"}], effort="high", temperature=0.3, max_tokens=3800
        )

        assert text == '{"ok": true}'
        call = completions.calls[0]
        assert call["reasoning_effort"] == "high"
        assert call["max_completion_tokens"] == 3800
        assert "temperature" not in call
        assert call["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_chat_model_parameters(self):
        client, completions = fake_openai('{"ok": true}')

        await completion_client(client, model="gpt-4o").complete(
            [{"role": "user", "content": "hi"}], temperature=0.3, max_tokens=1500
        )

        call = completions.calls[0]
        assert call["temperature"] == 0.3
        assert call["max_tokens"] == 1500
        assert "reasoning_effort" not in call

    @pytest.mark.asyncio
    async def test_falls_back_after_primary_fails(self):
        client, completions = fake_openai(
            ProviderError("openai", "overloaded", 503),
            ProviderError("openai", "overloaded", 503),
            '{"ok": true}',
        )

        text = await completion_client(client).complete([{"role": "user", "content": "hi"}], max_attempts=2)

        assert text == '{"ok": true}'
        assert [c["model"] for c in completions.calls] == ["o3-mini", "o3-mini", "gpt-4o"]

    @pytest.mark.asyncio
    async def test_empty_completion_is_an_error(self):
        client, _ = fake_openai("   ")

        with pytest.raises(ProviderError, match="empty completion"):
            await completion_client(client, fallback_model=None).complete([{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_one_request_per_attempt(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(503, json={"error": {"message": "overloaded", "type": "server_error"}})

        settings = Settings(
            openai_api_key="sk-test", openai_model="gpt-4o", openai_fallback_model="gpt-4o",
            retry_base_delay=0.0, retry_max_delay=0.0,
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = CompletionClient.from_settings(settings, http_client=http_client)
            with pytest.raises(ProviderError) as exc_info:
                await client.complete([{"role": "user", "content": "hi"}], max_attempts=3)

        assert exc_info.value.status_code == 503
        assert len(requests) == 3


class TestBuildFinancialContext:
    """Test the condensed prompt context."""

    def test_context_from_mapping(self):
        context = build_financial_context("AAPL", AGGREGATE)

        assert context["companyName"] == "Apple Inc."
        assert context["marketData"] == {"price": 190.5}
        assert context["news"] == [{"title": "Record quarter", "publishedDate": "2024-05-01"}]
        assert context["yearOverYear"][0]["pctChange"] == 10.0
        assert "Revenue" in context["yearOverYearSummary"]

    def test_missing_slices(self):
        context = build_financial_context("AAPL", {})

        assert context["companyName"] == "AAPL"
        assert context["yearOverYear"] == []
        assert context["yearOverYearSummary"] == "No changes detected."


class TestReportGenerator:
    """Test report generation and repair."""

    @pytest.mark.asyncio
    async def test_partial_report_is_repaired(self):
        reply = "Here you go:\n```json\n" + json.dumps({"recommendation": "Buy", "summary": "Solid."}) + "\n```"
        client, completions = fake_openai(reply)
        generator = ReportGenerator(completion_client(client), today=lambda: date(2024, 5, 2))

        outcome = await generator.generate("AAPL", AGGREGATE, report_type="comprehensive")

        data = outcome.data
        assert data["symbol"] == "AAPL"
        assert data["companyName"] == "Apple Inc."
        assert data["date"] == "2024-05-02"
        assert data["targetPrice"] == placeholder("targetPrice")
        assert [s["title"] for s in data["sections"]] == list(REPORT_SECTIONS)
        assert completions.calls[0]["reasoning_effort"] == "high"
        assert completions.calls[0]["max_completion_tokens"] == 3800

    @pytest.mark.asyncio
    async def test_unknown_report_type(self):
        client, _ = fake_openai("{}")
        with pytest.raises(ValueError):
            await ReportGenerator(completion_client(client)).generate("AAPL", AGGREGATE, report_type="deep")

    @pytest.mark.asyncio
    async def test_no_json_raises(self):
        client, _ = fake_openai("I am unable to produce a report.")
        with pytest.raises(MalformedResponseError):
            await ReportGenerator(completion_client(client)).generate("AAPL", AGGREGATE)

    def test_settings_per_report_type(self):
        assert ReportGenerator.settings_for("quick")["effort"] == "low"
        assert ReportGenerator.settings_for("standard")["effort"] == "medium"
        assert ReportGenerator.settings_for("comprehensive")["max_tokens"] == 3800


class TestPredictionGenerator:
    """Test prediction generation and repair."""

    @pytest.mark.asyncio
    async def test_current_price_comes_from_quote(self):
        reply = json.dumps({"predictedPrice": {"oneMonth": 195}, "keyDrivers": ["Services"]})
        client, completions = fake_openai(reply)

        outcome = await PredictionGenerator(completion_client(client, model="gpt-4o")).generate("AAPL", AGGREGATE)

        data = outcome.data
        assert data["symbol"] == "AAPL"
        assert data["currentPrice"] == 190.5
        assert data["predictedPrice"]["oneMonth"] == 195
        assert data["risks"] == [placeholder("risks")]
        assert completions.calls[0]["temperature"] == 0.3
        assert completions.calls[0]["max_tokens"] == 1500
