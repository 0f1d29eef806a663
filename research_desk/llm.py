"""Generative completions (OpenAI) for research reports and price predictions."""

import asyncio
import json
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx
import openai
from openai import AsyncOpenAI

from research_desk.config import Settings
from research_desk.deltas import CASHFLOW_METRICS, INCOME_METRICS, format_delta_summary, year_over_year
from research_desk.errors import ConfigurationError, OperationAborted, ProviderError
from research_desk.repair import (
    PREDICTION_CONTRACT,
    REPORT_CONTRACT,
    RepairOutcome,
    ResponseRepairer,
    parse_and_repair,
)
from research_desk.retry import ResilientCall


logger = logging.getLogger(__name__)

REASONING_MODEL_PREFIXES = ("o1", "o3", "o4")
REPORT_TYPES = ("quick", "standard", "comprehensive")

Message = Dict[str, str]


def is_reasoning_model(model: str) -> bool:
    return model.startswith(REASONING_MODEL_PREFIXES)


def _retry_openai(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


class CompletionClient:
    """
    Chat completions with retries and a one-shot fallback model.

    Reasoning models get `reasoning_effort`; other models get `temperature`.
    When the primary model still fails after its retries, the fallback
    model is tried once with its own retry budget.

    The injected client must not retry on its own (`max_retries=0`);
    every request is one attempt of the retry wrapper.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = "o3-mini",
        fallback_model: Optional[str] = "gpt-4o",
        retry: Optional[ResilientCall] = None
    ) -> None:
        self._client = client
        self._model = model
        self._fallback_model = fallback_model
        self._retry = retry or ResilientCall(retry_on=_retry_openai)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> "CompletionClient":
        if client is None:
            if not settings.openai_api_key:
                raise ConfigurationError("OpenAI API key is not configured")
            client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.http_timeout * 4,
                max_retries=0,
                http_client=http_client,
            )
        return cls(
            client,
            model=settings.openai_model,
            fallback_model=settings.openai_fallback_model,
            retry=ResilientCall.from_settings(settings, retry_on=_retry_openai),
        )

    @property
    def model(self) -> str:
        return self._model

    async def _create(
        self,
        model: str,
        messages: List[Message],
        effort: str,
        temperature: Optional[float],
        max_tokens: Optional[int]
    ) -> str:
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "response_format": {"type": "json_object"},
        }
        if is_reasoning_model(model):
            kwargs["reasoning_effort"] = effort
            if max_tokens:
                kwargs["max_completion_tokens"] = max_tokens
        else:
            kwargs["temperature"] = 0.7 if temperature is None else temperature
            if max_tokens:
                kwargs["max_tokens"] = max_tokens

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.APIStatusError as e:
            raise ProviderError("openai", f"{model}: {e.message}", e.status_code) from e
        except openai.APIConnectionError as e:
            raise ProviderError("openai", f"{model}: connection failed: {e}") from e

        content = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not content:
            raise ProviderError("openai", f"{model}: empty completion")
        return content

    async def complete(
        self,
        messages: List[Message],
        effort: str = "medium",
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        max_attempts: int = 3,
        abort: Optional[asyncio.Event] = None
    ) -> str:
        """
        Run a chat completion and return the message text.

        Raises:
            OperationAborted: If abort fires
            ProviderError: If both the primary and the fallback model failed
        """
        try:
            return await self._retry(
                lambda: self._create(self._model, messages, effort, temperature, max_tokens),
                description=f"openai {self._model}",
                abort=abort,
                max_attempts=max_attempts,
            )
        except OperationAborted:
            raise
        except Exception as e:
            if not self._fallback_model or self._fallback_model == self._model:
                raise
            logger.warning(f"Primary model {self._model} failed ({e}); falling back to {self._fallback_model}")

        return await self._retry(
            lambda: self._create(self._fallback_model, messages, effort, temperature, max_tokens),
            description=f"openai {self._fallback_model}",
            abort=abort,
            max_attempts=max_attempts,
        )


def _values(aggregate: Any) -> Mapping[str, Any]:
    """Accept an AggregateResult or a plain mapping of slice values."""
    if isinstance(aggregate, Mapping):
        return aggregate
    values = getattr(aggregate, "values", None)
    return values if isinstance(values, Mapping) else {}


def _head(rows: Any, n: int) -> List[Any]:
    return list(rows[:n]) if isinstance(rows, list) else []


def build_financial_context(symbol: str, aggregate: Any) -> Dict[str, Any]:
    """
    Condense an aggregate fetch into the data handed to the generator.

    Year-over-year changes of the income and cash-flow statements are
    pre-computed so the generator does not have to derive them.
    """
    data = _values(aggregate)
    profile = data.get("profile") or {}
    income = data.get("income") or []
    cashflow = data.get("cashflow") or []

    income_deltas = year_over_year(income, INCOME_METRICS)
    cashflow_deltas = year_over_year(cashflow, CASHFLOW_METRICS)

    return {
        "symbol": symbol,
        "companyName": profile.get("companyName") or symbol,
        "companyProfile": {
            k: profile.get(k) for k in ("companyName", "sector", "industry", "description", "mktCap", "beta")
        },
        "marketData": data.get("quote") or {},
        "financials": {
            "income": _head(income, 3),
            "balance": _head(data.get("balance"), 3),
            "cashflow": _head(cashflow, 3),
            "ratios": _head(data.get("ratios"), 1),
        },
        "yearOverYear": [d.to_dict() for d in income_deltas + cashflow_deltas],
        "yearOverYearSummary": format_delta_summary(income_deltas + cashflow_deltas),
        "news": [
            {"title": n.get("title"), "publishedDate": n.get("publishedDate")}
            for n in _head(data.get("news"), 5) if isinstance(n, dict)
        ],
        "peers": data.get("peers") or [],
    }


class ReportGenerator:
    """Produces a research report object that satisfies REPORT_CONTRACT."""

    def __init__(
        self,
        completion: CompletionClient,
        repairer: Optional[ResponseRepairer] = None,
        today: Callable[[], date] = date.today
    ) -> None:
        self._completion = completion
        self._repairer = repairer or ResponseRepairer()
        self._today = today

    @staticmethod
    def settings_for(report_type: str) -> Dict[str, Any]:
        """Reasoning effort, fallback temperature and token budget per report type."""
        if report_type == "comprehensive":
            return {"effort": "high", "temperature": 0.7, "max_tokens": 3800}
        if report_type == "quick":
            return {"effort": "low", "temperature": 0.3, "max_tokens": 2800}
        return {"effort": "medium", "temperature": 0.3, "max_tokens": 2800}

    async def generate(
        self,
        symbol: str,
        aggregate: Any,
        report_type: str = "standard",
        abort: Optional[asyncio.Event] = None
    ) -> RepairOutcome:
        """
        Generate and repair a report.

        Raises:
            ValueError: If report_type is unknown
            MalformedResponseError: If the output has no JSON object
        """
        if report_type not in REPORT_TYPES:
            raise ValueError(f"Unknown report type '{report_type}' (expected one of: {', '.join(REPORT_TYPES)})")

        context = build_financial_context(symbol, aggregate)
        sections = ", ".join(REPORT_CONTRACT.required_sections)
        messages = [
            {
                "role": "system",
                "content": (
                    "You are an equity research analyst. Reply with a single JSON object with the keys "
                    "symbol, companyName, date, recommendation, targetPrice, summary, sections "
                    "(a list of {title, content}), ratingDetails, scenarioAnalysis and catalysts. "
                    f"Include the sections: {sections}."
                ),
            },
            {
                "role": "user",
                "content": f"Write a {report_type} research report for {symbol} using this data:\n"
                           f"{json.dumps(context, default=str)}",
            },
        ]

        params = self.settings_for(report_type)
        logger.info(f"Generating {report_type} report for {symbol}")
        text = await self._completion.complete(messages, abort=abort, **params)

        known = {
            "symbol": symbol,
            "companyName": context["companyName"],
            "date": self._today().isoformat(),
        }
        return parse_and_repair(text, REPORT_CONTRACT, known, self._repairer)


class PredictionGenerator:
    """Produces a price prediction object that satisfies PREDICTION_CONTRACT."""

    def __init__(self, completion: CompletionClient, repairer: Optional[ResponseRepairer] = None) -> None:
        self._completion = completion
        self._repairer = repairer or ResponseRepairer()

    async def generate(
        self,
        symbol: str,
        aggregate: Any,
        abort: Optional[asyncio.Event] = None
    ) -> RepairOutcome:
        context = build_financial_context(symbol, aggregate)
        current_price = (context["marketData"] or {}).get("price")
        messages = [
            {
                "role": "system",
                "content": (
                    "You are a quantitative equity analyst. Reply with a single JSON object with the keys "
                    "symbol, currentPrice, predictedPrice (oneMonth, threeMonths, sixMonths, oneYear), "
                    "sentimentAnalysis, confidenceLevel (0-100), keyDrivers (list) and risks (list)."
                ),
            },
            {
                "role": "user",
                "content": f"Predict the share price of {symbol} (current price: {current_price}) from:\n"
                           f"{json.dumps(context, default=str)}",
            },
        ]

        logger.info(f"Generating price prediction for {symbol}")
        text = await self._completion.complete(
            messages, effort="medium", temperature=0.3, max_tokens=1500, abort=abort
        )
        return parse_and_repair(
            text,
            PREDICTION_CONTRACT,
            {"symbol": symbol, "currentPrice": current_price},
            self._repairer,
        )
