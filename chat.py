"""Chat assistant passthrough to an OpenAI-compatible streaming completion API."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Iterable, Optional

import httpx

from aggregations import BalanceSummary, parse_txn_datetime
from config import Settings
from csv_utils import format_amount

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful assistant integrated into a personal finance manager "
    "application. Be concise and helpful. Please format your responses using "
    "Markdown (e.g., bold text with **, bullet points with * or -)."
)
CONTEXT_FIELDS = ("date", "description", "amount", "type", "category")

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


class ChatConfigError(Exception):
    pass


class ChatUpstreamError(Exception):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Completion API error: {status_code} {body}")
        self.status_code = status_code
        self.body = body


def transaction_context(transactions: Iterable[Any]) -> list[dict[str, Any]]:
    """Trim stored transactions down to the fields the assistant sees."""
    out: list[dict[str, Any]] = []
    for txn in transactions:
        when = parse_txn_datetime(getattr(txn, "date", None))
        kind = getattr(txn, "type", None)
        out.append(
            {
                "date": when.isoformat() if when else None,
                "description": txn.description,
                "amount": format_amount(txn.amount_cents),
                "type": getattr(kind, "value", kind),
                "category": txn.category,
            }
        )
    return out


def financial_summary(summary: BalanceSummary) -> dict[str, str]:
    top = summary.top_expense_category
    rate = summary.savings_rate
    return {
        "totalBalance": format_amount(summary.balance_cents),
        "thisMonth": format_amount(summary.this_month_net_cents),
        "thisMonthChange": f"{summary.expense_change:.1f}",
        "topCategory": top.name if top else "None",
        "topCategoryAmount": format_amount(top.amount_cents) if top else "0.00",
        "savingsRate": f"{rate:.1f}",
        "savingsRateInfo": (
            f"Saving {rate:.1f}% of income" if rate > 0 else "Spending exceeds income"
        ),
    }


def build_system_prompt(
    transactions: Optional[list[dict[str, Any]]], summary: Optional[dict[str, Any]]
) -> str:
    if transactions:
        rows = [{key: t.get(key) for key in CONTEXT_FIELDS} for t in transactions]
        transaction_part = (
            "\n\nHere are the user's recent transactions:\n"
            + json.dumps(rows, indent=2, default=str)
        )
    else:
        transaction_part = "\n\nNo transaction data available for the user."

    if summary:
        summary_part = (
            "\n\nHere is the user's financial summary:\n"
            f"Total Balance: {summary.get('totalBalance')} (Lifetime total across all categories)\n"
            f"This Month: {summary.get('thisMonth')} ({summary.get('thisMonthChange')}% expense change from last month)\n"
            f"Top Category: {summary.get('topCategory')} ({summary.get('topCategoryAmount')} total)\n"
            f"Savings Rate: {summary.get('savingsRate')}% ({summary.get('savingsRateInfo')})"
        )
    else:
        summary_part = "\n\nNo financial summary data available for the user."
    return f"{SYSTEM_PROMPT}{transaction_part}{summary_part}"


def build_messages(
    history: Iterable[Any],
    transactions: Optional[list[dict[str, Any]]],
    summary: Optional[dict[str, Any]],
) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": build_system_prompt(transactions, summary)}]
    for msg in history:
        messages.append({"role": msg.role, "content": msg.content})
    return messages


def parse_sse_line(line: str) -> Optional[str]:
    """Return the delta text carried by one ``data:`` line of the upstream stream."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data or data == "[DONE]":
        return None
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        logger.warning(f"chat_stream_bad_chunk: size={len(data)}")
        return None
    try:
        content = parsed["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    if isinstance(content, str) and content:
        return content
    return None


def _partial_tag_length(text: str, tag: str) -> int:
    for size in range(min(len(text), len(tag) - 1), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


class ThinkTagSplitter:
    """Separates ``<think>...</think>`` segments from the visible answer.

    Chunks may split tags anywhere; a possible tag prefix at the end of a chunk is held
    back until the next chunk decides it.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._thinking = False

    @property
    def _kind(self) -> str:
        return "thinking" if self._thinking else "content"

    def feed(self, chunk: str) -> list[tuple[str, str]]:
        self._buffer += chunk
        events: list[tuple[str, str]] = []
        while True:
            tag = THINK_CLOSE if self._thinking else THINK_OPEN
            index = self._buffer.find(tag)
            if index == -1:
                keep = _partial_tag_length(self._buffer, tag)
                text = self._buffer[: len(self._buffer) - keep]
                if text:
                    events.append((self._kind, text))
                self._buffer = self._buffer[len(self._buffer) - keep :]
                return events
            if index:
                events.append((self._kind, self._buffer[:index]))
            self._buffer = self._buffer[index + len(tag) :]
            self._thinking = not self._thinking

    def flush(self) -> list[tuple[str, str]]:
        events = [(self._kind, self._buffer)] if self._buffer else []
        self._buffer = ""
        return events


class UpstreamStream:
    def __init__(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        self.client = client
        self.response = response
        self._closed = False

    async def events(self) -> AsyncIterator[tuple[str, str]]:
        splitter = ThinkTagSplitter()
        try:
            async for line in self.response.aiter_lines():
                content = parse_sse_line(line)
                if content:
                    for event in splitter.feed(content):
                        yield event
            for event in splitter.flush():
                yield event
        except httpx.HTTPError as exc:
            logger.error(f"chat_stream_interrupted: error={exc.__class__.__name__}")
            yield ("error", "The assistant stopped responding, please try again.")
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.response.aclose()
        await self.client.aclose()


class ChatProxy:
    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport

    async def open(self, messages: list[dict[str, str]]) -> UpstreamStream:
        if not self.settings.llm_api_key:
            raise ChatConfigError("Completion API key not configured.")
        client = httpx.AsyncClient(
            timeout=self.settings.llm_timeout_secs, transport=self.transport
        )
        request = client.build_request(
            "POST",
            self.settings.llm_endpoint,
            json={
                "model": self.settings.llm_model,
                "messages": messages,
                "stream": True,
                "temperature": 0.7,
            },
            headers={"Authorization": f"Bearer {self.settings.llm_api_key}"},
        )
        logger.info(f"chat_request: endpoint={self.settings.llm_endpoint} messages={len(messages)}")
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError:
            await client.aclose()
            raise
        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            await client.aclose()
            logger.error(f"chat_upstream_error: status={response.status_code}")
            raise ChatUpstreamError(response.status_code, body)
        return UpstreamStream(client, response)
