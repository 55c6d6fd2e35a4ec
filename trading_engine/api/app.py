"""
HTTP API under /api/trading: backtests, streamed watchlist batches (SSE) and
live session control.
"""

from __future__ import annotations
import json
import logging
import threading
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from trading_engine.backtesting.batch import BatchOrchestrator, ResultEvent
from trading_engine.backtesting.engine import BacktestEngine
from trading_engine.core.config import Config
from trading_engine.core.errors import EngineError, InvalidParameterError
from trading_engine.core.types import Bar, Direction
from trading_engine.data.cache import BarCache
from trading_engine.data.provider import YahooProvider
from trading_engine.execution.alpaca import AlpacaClient
from trading_engine.live.analysis import analyze_symbol
from trading_engine.live.notifier import TradeNotifier
from trading_engine.live.reconcile import BrokerMonitor
from trading_engine.live.scheduler import SessionScheduler
from trading_engine.live.session import LiveSessionManager
from trading_engine.live.store import Store
from trading_engine.risk.manager import RiskManager
from trading_engine.strategies.registry import create_strategy, strategy_catalog

logger = logging.getLogger("trading_engine.api")

STATUS_BY_REASON = {
    "invalid_parameter": 400,
    "unknown_strategy": 400,
    "config_missing": 400,
    "data_unavailable": 400,
    "not_found": 404,
    "concurrent_mutation": 409,
    "resume_rejected": 409,
    "broker_unreachable": 502,
    "broker_rejected": 502,
}


# Request bodies

class BacktestRequest(BaseModel):
    symbol: str
    strategy: str
    interval: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    long_only: bool = False


class WatchlistRequest(BaseModel):
    strategy: str
    symbols: List[str] = Field(default_factory=list)
    interval: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    us_only: bool = False
    long_only: bool = False
    direction: Optional[Direction] = None
    since: Optional[datetime] = None


class LiveConfigRequest(BaseModel):
    strategy: str
    symbols: List[str]
    interval: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    long_only: bool = False
    trade_amount: float = 1000.0
    alpaca_enabled: bool = False


class StartRequest(BaseModel):
    name: str = ""
    mode: str = "poll"
    # replay history since this time instead of trading only new bars
    started_at: Optional[datetime] = None


class AddStrategyRequest(BaseModel):
    name: str
    params: Dict[str, Any] = Field(default_factory=dict)
    symbols: List[str] = Field(default_factory=list)
    long_only: bool = False


class UpdateStrategyRequest(BaseModel):
    is_enabled: Optional[bool] = None
    params: Optional[Dict[str, Any]] = None
    symbols: Optional[List[str]] = None
    long_only: Optional[bool] = None


class BarRequest(BaseModel):
    symbol: str
    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class ClosePositionRequest(BaseModel):
    price: Optional[float] = None


class AnalyzeRequest(BaseModel):
    session_id: int
    symbol: str
    strategy_id: Optional[int] = None


@dataclass
class Services:
    config: Config
    cache: BarCache
    risk_manager: RiskManager
    orchestrator: BatchOrchestrator
    manager: LiveSessionManager
    scheduler: SessionScheduler
    monitor: BrokerMonitor
    notifier: Optional[TradeNotifier] = None


def build_services(config: Config) -> Services:
    """Wire the engine from config. Broker and notifier only when their secrets are set."""
    cache = BarCache(YahooProvider(config.data_base_url, config.data_timeout), config.cache_dir)
    risk_manager = RiskManager(
        trade_amount=config.trade_amount,
        min_notional=config.min_notional,
        min_risk_reward=config.min_risk_reward,
    )
    broker = None
    if config.broker_enabled:
        broker = AlpacaClient(config.alpaca_api_key, config.alpaca_api_secret, config.alpaca_base_url)
    orchestrator = BatchOrchestrator(
        cache,
        risk_manager,
        max_workers=config.batch_max_workers,
        prefetch_max_workers=config.prefetch_max_workers,
        entry_on_next_open=config.entry_on_next_open,
        include_end_trades=config.include_end_trades,
        count_open_as_wins=config.count_open_as_wins,
    )
    manager = LiveSessionManager(
        Store(config.database_url),
        cache,
        risk_manager,
        broker=broker,
        entry_on_next_open=config.entry_on_next_open,
        market_hours_only=config.market_hours_only,
        count_open_as_wins=config.count_open_as_wins,
    )
    monitor = BrokerMonitor(manager.store, broker, config.reconcile_tolerance_pct)
    notifier = None
    if config.telegram_bot_token and config.telegram_chat_id:
        notifier = TradeNotifier(
            manager, config.telegram_bot_token, config.telegram_chat_id, config.notifier_poll_seconds
        )
    return Services(
        config=config,
        cache=cache,
        risk_manager=risk_manager,
        orchestrator=orchestrator,
        manager=manager,
        scheduler=SessionScheduler(manager, monitor),
        monitor=monitor,
        notifier=notifier,
    )


def sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def create_app(services: Services) -> FastAPI:
    """Create the FastAPI application around already-wired services."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.scheduler.sync()
        if services.notifier is not None:
            services.notifier.start()
        yield
        if services.notifier is not None:
            services.notifier.stop()
        services.scheduler.shutdown()

    app = FastAPI(title="Trading Engine", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    batches: Dict[str, threading.Event] = {}
    batches_lock = threading.Lock()

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        status = STATUS_BY_REASON.get(exc.reason, 500)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail or exc.reason)
        return JSONResponse(status_code=status, content=exc.to_dict())

    router = APIRouter(prefix="/api/trading")
    manager = services.manager

    def user(user_id: Optional[int]) -> int:
        return user_id if user_id is not None else services.config.default_user_id

    @router.get("/strategies")
    def strategies():
        return {"strategies": strategy_catalog()}

    @router.post("/backtest")
    def backtest(req: BacktestRequest):
        strategy = create_strategy(req.strategy, req.params)
        interval = req.interval or strategy.default_interval
        bars = services.cache.get(req.symbol.strip().upper(), interval)
        engine = BacktestEngine(
            strategy,
            services.risk_manager,
            long_only=req.long_only,
            entry_on_next_open=services.config.entry_on_next_open,
            include_end_trades=services.config.include_end_trades,
            count_open_as_wins=services.config.count_open_as_wins,
        )
        return engine.run(bars, req.symbol.strip().upper()).to_dict()

    @router.post("/backtest-watchlist")
    def backtest_watchlist(req: WatchlistRequest):
        symbols = req.symbols or services.config.watchlist
        if not symbols:
            raise InvalidParameterError("symbols", "no symbols given and no watchlist configured")
        interval = req.interval or create_strategy(req.strategy, req.params).default_interval
        cancel = threading.Event()
        events = services.orchestrator.run_batch(
            symbols, req.strategy, req.params, interval, us_only=req.us_only, long_only=req.long_only,
            cancel_event=cancel,
        )
        batch_id = uuid.uuid4().hex
        with batches_lock:
            batches[batch_id] = cancel

        def stream() -> Iterator[str]:
            try:
                for event in events:
                    if isinstance(event, ResultEvent) and (req.direction or req.since):
                        event = ResultEvent(event.result.filtered(req.direction, req.since))
                    yield sse(event.to_dict())
            finally:
                # client gone or stream finished
                cancel.set()
                with batches_lock:
                    batches.pop(batch_id, None)

        return StreamingResponse(
            stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Batch-Id": batch_id},
        )

    @router.delete("/backtest-watchlist/{batch_id}")
    def cancel_watchlist(batch_id: str):
        with batches_lock:
            cancel = batches.get(batch_id)
        if cancel is not None:
            cancel.set()
        return {"cancelled": cancel is not None}

    @router.post("/live/config")
    def save_config(req: LiveConfigRequest, user_id: Optional[int] = Query(None)):
        return manager.save_config(
            user(user_id),
            req.strategy,
            req.symbols,
            interval=req.interval,
            params=req.params,
            long_only=req.long_only,
            trade_amount=req.trade_amount,
            alpaca_enabled=req.alpaca_enabled,
        )

    @router.get("/live/config")
    def get_config(user_id: Optional[int] = Query(None)):
        return manager.get_config(user(user_id))

    @router.get("/live/status")
    def status(user_id: Optional[int] = Query(None)):
        return manager.status(user(user_id))

    @router.post("/live/start")
    def start(req: Optional[StartRequest] = None, user_id: Optional[int] = Query(None)):
        req = req or StartRequest()
        session = manager.start(user(user_id), name=req.name, mode=req.mode, started_at=req.started_at)
        if session["mode"] == "poll":
            services.scheduler.register(session["id"])
        return session

    @router.post("/live/stop")
    def stop(session_id: int = Query(...)):
        services.scheduler.deregister(session_id)
        return manager.stop(session_id)

    @router.post("/live/session/{session_id}/resume")
    def resume(session_id: int):
        session = manager.resume(session_id)
        if session["mode"] == "poll":
            services.scheduler.register(session_id)
        return session

    @router.get("/live/sessions")
    def sessions(user_id: Optional[int] = Query(None)):
        return {"sessions": manager.list_sessions(user(user_id))}

    @router.get("/live/session/{session_id}")
    def session_detail(session_id: int):
        return manager.session_detail(session_id)

    @router.delete("/live/session/{session_id}")
    def delete_session(session_id: int):
        result = manager.delete_session(session_id)
        services.scheduler.deregister(session_id)
        return result

    @router.post("/live/session/{session_id}/strategy")
    def add_strategy(session_id: int, req: AddStrategyRequest):
        return manager.add_strategy(session_id, req.name, req.params, req.symbols, req.long_only)

    @router.put("/live/session/{session_id}/strategy/{strategy_id}")
    def update_strategy(session_id: int, strategy_id: int, req: UpdateStrategyRequest):
        return manager.update_strategy(
            session_id, strategy_id,
            is_enabled=req.is_enabled, params=req.params, symbols=req.symbols, long_only=req.long_only,
        )

    @router.post("/live/session/{session_id}/bar")
    def push_bar(session_id: int, req: BarRequest):
        bar = Bar(req.time, req.open, req.high, req.low, req.close, req.volume)
        return {"transitions": manager.on_bar(session_id, req.symbol, bar)}

    @router.post("/live/session/{session_id}/position/{position_id}/close")
    def close_position(session_id: int, position_id: int, req: Optional[ClosePositionRequest] = None):
        return manager.close_position(session_id, position_id, req.price if req else None)

    @router.get("/live/session/{session_id}/reconcile")
    def reconcile(session_id: int):
        return services.monitor.check(session_id).to_dict()

    @router.get("/live/logs/{session_id}")
    def logs(
        session_id: int,
        after_id: int = Query(0, ge=0),
        limit: int = Query(500, ge=1, le=5000),
        strategy: Optional[str] = Query(None),
    ):
        return {"logs": manager.logs_after(session_id, after_id, limit, strategy)}

    @router.post("/live/analyze")
    def analyze(req: AnalyzeRequest):
        return analyze_symbol(manager, req.session_id, req.symbol, req.strategy_id, services.monitor)

    app.include_router(router)
    return app
