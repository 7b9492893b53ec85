"""Entry point for launching the control API server."""

from __future__ import annotations

import argparse

import uvicorn

from ..config.settings import get_app_config
from ..main import build_coordinator
from ..monitoring.metrics import METRICS
from .app import create_dashboard_app
from .state import DashboardState


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the DLMM automation control API")
    parser.add_argument("--host", help="Override API host")
    parser.add_argument("--port", type=int, help="Override API port")
    parser.add_argument(
        "--with-automation",
        action="store_true",
        default=False,
        help="Start the rebalance and order monitors alongside the API.",
    )
    args = parser.parse_args()

    config = get_app_config()
    coordinator = build_coordinator(config)
    state = DashboardState(
        config=config,
        coordinator=coordinator,
        metrics=METRICS,
        autostart=args.with_automation,
    )
    app = create_dashboard_app(state)
    host = args.host or config.dashboard.host
    port = args.port or config.dashboard.port
    uvicorn.run(app, host=host, port=port, log_level=config.monitoring.log_level.lower())


if __name__ == "__main__":
    main()
