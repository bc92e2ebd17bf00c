import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from stock_analyst.app.logging import configure_logging, event
from stock_analyst.app.schemas import (
    AnalyzeRequest,
    ChatRequest,
    HistoryCreate,
    LoadSessionRequest,
    RenderRequest,
    RenderResponse,
    SessionRequest,
)
from stock_analyst.app.settings import Settings, get_settings
from stock_analyst.inference.upstream_client import ChatStreamRequest, UpstreamStreamClient
from stock_analyst.orchestration.analysis import (
    analysis_completion,
    begin_analysis,
    chat_completion,
    fetch_snapshot_safely,
    load_history_item,
)
from stock_analyst.orchestration.session import SessionContext, SessionRegistry, normalize_messages
from stock_analyst.rendering.markdown import render_html
from stock_analyst.storage.history import HistoryStore
from stock_analyst.storage.models import HistoryRecord
from stock_analyst.streaming.errors import RelayError, ValidationError
from stock_analyst.streaming.relay import CompletionCallback, StreamRelay
from stock_analyst.tools.quote_client import QuoteClient, news_url
from stock_analyst.tools.stock_codes import normalize_stock_code

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


class RelayResponse(StreamingResponse):
    """SSE response that always releases its relay, even if `frames()` was never started."""

    def __init__(self, relay: StreamRelay):
        super().__init__(relay.frames(), media_type="text/event-stream", headers=SSE_HEADERS)
        self.relay = relay

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            # no-op once the relay has terminated or was superseded
            await self.relay.cancel()


def create_app(
    settings: Optional[Settings] = None,
    *,
    upstream: Optional[UpstreamStreamClient] = None,
    quotes: Optional[QuoteClient] = None,
    store: Optional[HistoryStore] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    store = store or HistoryStore(settings.history_db_url)
    store.init_db()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.sessions.close()
        await app.state.upstream.close()
        await app.state.quotes.close()
        app.state.store.close()

    app = FastAPI(title="AI Stock Analyst", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.sessions = SessionRegistry()
    app.state.store = store
    app.state.upstream = upstream or UpstreamStreamClient(
        connect_timeout=settings.upstream_connect_timeout,
        read_timeout=settings.upstream_read_timeout,
    )
    app.state.quotes = quotes or QuoteClient(base_url=settings.quote_url, timeout=settings.quote_timeout)

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return JSONResponse(status_code=exc.http_status, content={"detail": exc.message})

    static_dir = Path(settings.static_dir)
    if static_dir.exists():
        app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")

    async def _relay(
        context: SessionContext,
        payload: AnalyzeRequest | ChatRequest,
        messages: list,
        max_tokens: int,
        on_complete: Optional[CompletionCallback],
    ) -> RelayResponse:
        request = ChatStreamRequest(
            api_url=payload.api_url,
            api_key=payload.api_key,
            model=payload.model,
            messages=messages,
            temperature=settings.temperature,
            max_tokens=max_tokens,
        )
        relay = StreamRelay(app.state.upstream, request, on_complete=on_complete, session_id=context.session_id)
        await context.start_relay(relay)
        return RelayResponse(relay)

    @app.post("/api/analyze")
    async def analyze(payload: AnalyzeRequest):
        payload.require("stock_code", "api_key", "api_url", "model")
        ticker = normalize_stock_code(payload.stock_code, payload.exchange)
        context = app.state.sessions.get(payload.session_id)
        # stop the previous stream now rather than after the quote round-trip
        await context.cancel_active()

        snapshot = await fetch_snapshot_safely(app.state.quotes, ticker)
        begin_analysis(context, ticker, snapshot)
        event("analysis started", {"session": context.session_id, "ticker": ticker, "quote": snapshot is not None})
        return await _relay(
            context,
            payload,
            context.conversation.to_request_payload(),
            settings.analysis_max_tokens,
            analysis_completion(context, app.state.store, ticker, snapshot.name if snapshot else ""),
        )

    @app.post("/api/chat")
    async def chat(payload: ChatRequest):
        payload.require("api_key", "api_url", "model")
        context = app.state.sessions.get(payload.session_id)

        if payload.messages is not None:
            payload.require("messages")
            messages = [m.model_dump() for m in normalize_messages(payload.messages)]
            return await _relay(context, payload, messages, settings.chat_max_tokens, None)

        if not (payload.message or "").strip():
            raise ValidationError(["message"])
        if not context.ticker:
            raise HTTPException(status_code=400, detail="Analyze a stock before chatting about it")
        await context.cancel_active()
        context.conversation.append_message("user", payload.message.strip())
        return await _relay(
            context,
            payload,
            context.conversation.to_request_payload(),
            settings.chat_max_tokens,
            chat_completion(context),
        )

    @app.post("/api/session/new")
    async def new_session(payload: SessionRequest):
        context = app.state.sessions.get(payload.session_id)
        await context.cancel_active()
        context.reset()
        return context.snapshot()

    @app.post("/api/session/load")
    async def load_session(payload: LoadSessionRequest):
        payload.require("history_id")
        record = await run_in_threadpool(app.state.store.get, payload.history_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"History item {payload.history_id} not found")
        context = app.state.sessions.get(payload.session_id)
        await context.cancel_active()
        load_history_item(context, record)
        return context.snapshot()

    @app.get("/api/session/{session_id}")
    def get_session(session_id: str):
        if session_id not in app.state.sessions:
            # reads never register a session
            return SessionContext(session_id).snapshot()
        return app.state.sessions.get(session_id).snapshot()

    @app.get("/api/history", response_model=list[HistoryRecord])
    def list_history():
        try:
            return app.state.store.list_recent(limit=settings.history_limit)
        except Exception as exc:  # noqa: BLE001
            logger.exception("history listing failed")
            raise HTTPException(status_code=500, detail=str(exc))

    @app.post("/api/history")
    def create_history(payload: HistoryCreate):
        payload.require("stock_code", "content")
        try:
            record = app.state.store.append(payload.stock_code, payload.content, payload.stock_name)
        except Exception as exc:  # noqa: BLE001
            logger.exception("history insert failed")
            raise HTTPException(status_code=500, detail=str(exc))
        return {"success": True, "id": record.id}

    @app.delete("/api/history/{record_id}")
    def delete_history(record_id: str):
        if record_id != "all" and not record_id.isdigit():
            raise HTTPException(status_code=400, detail=f"Invalid history id: {record_id}")
        try:
            if record_id == "all":
                deleted = app.state.store.delete_all()
            else:
                deleted = int(app.state.store.delete(int(record_id)))
        except Exception as exc:  # noqa: BLE001
            logger.exception("history delete failed")
            raise HTTPException(status_code=500, detail=str(exc))
        return {"success": True, "deleted": deleted}

    @app.get("/api/stock/news")
    @app.get("/api/stock/quote")
    async def stock_quote(code: str = Query("", description="Stock code, e.g. 600519 or hk00700")):
        if not code.strip():
            raise ValidationError(["code"])
        ticker = normalize_stock_code(code)
        try:
            snapshot = await app.state.quotes.fetch_snapshot(ticker)
        except Exception as exc:  # noqa: BLE001
            raise HTTPException(status_code=500, detail=str(exc))
        return {
            "success": True,
            "stockInfo": snapshot.stock_info() if snapshot else {},
            "newsUrl": news_url(ticker),
        }

    @app.post("/api/render", response_model=RenderResponse)
    def render(payload: RenderRequest):
        return RenderResponse(html=render_html(payload.text))

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/")
    async def root():
        """Serve the page shell if one is installed."""
        ui_path = static_dir / "index.html"
        if ui_path.exists():
            return FileResponse(ui_path)
        return {"message": "AI Stock Analyst API. POST /api/analyze to start an analysis."}

    return app
