"""FastAPI control API for the automation engine."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .models import (
    BacktestRequest,
    CollectFeesRequest,
    CompareRequest,
    DcaOrderRequest,
    ExitOrderRequest,
    LimitOrderRequest,
    ManualRebalanceRequest,
    OpenPositionRequest,
    PriceAlertRequest,
    RebalanceConfigRequest,
    RemoveLiquidityRequest,
)
from .state import DashboardState


def create_dashboard_app(state: DashboardState) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if state.autostart:
            state.coordinator.start()
        try:
            yield
        finally:
            if state.coordinator.running:
                state.coordinator.stop()

    app = FastAPI(title="DLMM Autopilot", version="1.0.0", lifespan=lifespan)
    cfg = state.config.dashboard
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_state() -> DashboardState:
        return state

    @app.exception_handler(LookupError)
    async def not_found(_, exc: LookupError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc).strip("'\"")})

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def prometheus_metrics(dashboard_state: DashboardState = Depends(get_state)) -> str:
        return dashboard_state.metrics.export_prometheus()

    @app.get("/api/metrics")
    async def api_metrics(dashboard_state: DashboardState = Depends(get_state)) -> JSONResponse:
        return JSONResponse(dashboard_state.metrics_snapshot())

    # Rebalance ----------------------------------------------------------
    @app.get("/api/rebalance/configs")
    async def api_rebalance_configs(dashboard_state: DashboardState = Depends(get_state)) -> JSONResponse:
        return JSONResponse(dashboard_state.rebalance_configs())

    @app.put("/api/rebalance/configs/{position_id}")
    async def api_configure_rebalance(
        position_id: str,
        request: RebalanceConfigRequest,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = dashboard_state.configure_rebalance(position_id, request)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload)

    @app.delete("/api/rebalance/configs/{position_id}")
    async def api_remove_rebalance_config(
        position_id: str,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        if not dashboard_state.remove_rebalance_config(position_id):
            raise HTTPException(status_code=404, detail="Rebalance config not found")
        return JSONResponse({"removed": position_id})

    @app.get("/api/rebalance/history")
    async def api_rebalance_history(
        position_id: Optional[str] = None,
        limit: int = Query(50, ge=1, le=50),
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        return JSONResponse(dashboard_state.rebalance_history(position_id, limit=limit))

    # Orders -------------------------------------------------------------
    @app.get("/api/orders")
    async def api_orders(
        status: Optional[str] = Query(None, pattern="^(pending|executed|cancelled|failed)$"),
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        return JSONResponse(dashboard_state.orders(status))

    @app.post("/api/orders/limit", status_code=201)
    async def api_create_limit_order(
        request: LimitOrderRequest,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = await dashboard_state.create_limit_order(request)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload, status_code=201)

    @app.post("/api/orders/stop-loss", status_code=201)
    async def api_create_stop_loss(
        request: ExitOrderRequest,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = await dashboard_state.create_stop_loss(request)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload, status_code=201)

    @app.post("/api/orders/take-profit", status_code=201)
    async def api_create_take_profit(
        request: ExitOrderRequest,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = await dashboard_state.create_take_profit(request)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload, status_code=201)

    @app.post("/api/orders/dca", status_code=201)
    async def api_create_dca_order(
        request: DcaOrderRequest,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = await dashboard_state.create_dca_order(request)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload, status_code=201)

    @app.post("/api/orders/{order_id}/cancel")
    async def api_cancel_order(
        order_id: str,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = dashboard_state.cancel_order(order_id)
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return JSONResponse(payload)

    # Positions and alerts -----------------------------------------------
    @app.post("/api/positions", status_code=201)
    async def api_open_position(
        request: OpenPositionRequest,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = await dashboard_state.open_position(request)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload, status_code=201)

    @app.post("/api/positions/{position_id}/remove")
    async def api_remove_liquidity(
        position_id: str,
        request: Optional[RemoveLiquidityRequest] = None,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = await dashboard_state.remove_liquidity(position_id, request or RemoveLiquidityRequest())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload)

    @app.post("/api/positions/{position_id}/collect-fees")
    async def api_collect_fees(
        position_id: str,
        request: Optional[CollectFeesRequest] = None,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = await dashboard_state.collect_fees(position_id, request or CollectFeesRequest())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload)

    @app.post("/api/positions/{position_id}/rebalance")
    async def api_rebalance_position(
        position_id: str,
        request: Optional[ManualRebalanceRequest] = None,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = await dashboard_state.rebalance_position(position_id, request or ManualRebalanceRequest())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload)

    @app.get("/api/portfolio")
    async def api_portfolio(dashboard_state: DashboardState = Depends(get_state)) -> JSONResponse:
        return JSONResponse(await dashboard_state.portfolio())

    @app.get("/api/alerts")
    async def api_alerts(dashboard_state: DashboardState = Depends(get_state)) -> JSONResponse:
        return JSONResponse(await dashboard_state.position_alerts())

    @app.get("/api/price-alerts")
    async def api_price_alerts(dashboard_state: DashboardState = Depends(get_state)) -> JSONResponse:
        return JSONResponse(dashboard_state.price_alerts())

    @app.post("/api/price-alerts", status_code=201)
    async def api_add_price_alert(
        request: PriceAlertRequest,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = await dashboard_state.add_price_alert(request)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload, status_code=201)

    @app.delete("/api/price-alerts/{alert_id}")
    async def api_remove_price_alert(
        alert_id: str,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        if not dashboard_state.remove_price_alert(alert_id):
            raise HTTPException(status_code=404, detail="Price alert not found")
        return JSONResponse({"removed": alert_id})

    # Backtests ----------------------------------------------------------
    @app.post("/api/backtest")
    async def api_backtest(
        request: BacktestRequest,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = await dashboard_state.backtest(request)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload)

    @app.post("/api/backtest/compare")
    async def api_compare_strategies(
        request: CompareRequest,
        dashboard_state: DashboardState = Depends(get_state),
    ) -> JSONResponse:
        try:
            payload = await dashboard_state.compare_strategies(request)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload)

    return app


__all__ = ["create_dashboard_app"]
