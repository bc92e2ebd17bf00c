import logging
from datetime import date
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from stock_analyst.orchestration.session import SessionContext
from stock_analyst.prompts.analyst_prompt import ANALYSIS_USER_TEMPLATE, ANALYST_SYSTEM, FRESHNESS_NOTICE
from stock_analyst.storage.history import HistoryStore
from stock_analyst.storage.models import HistoryRecord
from stock_analyst.streaming.relay import CompletionCallback
from stock_analyst.tools.quote_client import QuoteClient, QuoteSnapshot, format_snapshot
from stock_analyst.tools.stock_codes import market_name

logger = logging.getLogger(__name__)


def build_system_prompt(snapshot_text: str = "", today: Optional[date] = None) -> str:
    today = today or date.today()
    prompt = ANALYST_SYSTEM + "\n\n" + FRESHNESS_NOTICE.format(today=today.isoformat())
    if snapshot_text:
        prompt += "\n\n" + snapshot_text
    return prompt


def opening_user_message(ticker: str) -> str:
    return ANALYSIS_USER_TEMPLATE.format(ticker=ticker.upper(), market=market_name(ticker))


async def fetch_snapshot_safely(quotes: QuoteClient, ticker: str) -> Optional[QuoteSnapshot]:
    """The analysis still runs without a quote; failures only cost the enrichment."""
    try:
        return await quotes.fetch_snapshot(ticker)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Continuing %s analysis without live quote: %s", ticker, exc)
        return None


def begin_analysis(context: SessionContext, ticker: str, snapshot: Optional[QuoteSnapshot] = None) -> None:
    snapshot_text = format_snapshot(snapshot) if snapshot is not None else ""
    context.reset(ticker)
    context.conversation.append_message("system", build_system_prompt(snapshot_text))
    context.conversation.append_message("user", opening_user_message(ticker))


def load_history_item(context: SessionContext, record: HistoryRecord) -> None:
    context.reset(record.stock_code)
    context.conversation.append_message("system", build_system_prompt())
    context.conversation.append_message("assistant", record.content)


def analysis_completion(
    context: SessionContext,
    store: HistoryStore,
    ticker: str,
    stock_name: str = "",
) -> CompletionCallback:
    async def on_complete(text: str) -> None:
        context.conversation.append_message("assistant", text)
        if not text.strip():
            logger.warning("Empty analysis for %s, not saved to history", ticker)
            return
        await run_in_threadpool(store.append, ticker, text, stock_name)

    return on_complete


def chat_completion(context: SessionContext) -> CompletionCallback:
    async def on_complete(text: str) -> None:
        context.conversation.append_message("assistant", text)

    return on_complete
