"""
Metrics collection and monitoring for the Cycloud market API.

This module provides integration with Prometheus for collecting and exposing
metrics about HTTP traffic, auctions, settlements and open event streams.
"""

import logging
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

logger = logging.getLogger(__name__)

REQUEST_COUNT = Counter(
    "cycloud_http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"]
)

REQUEST_LATENCY = Histogram(
    "cycloud_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"]
)

ACTIVE_REQUESTS = Gauge(
    "cycloud_http_requests_active",
    "Number of active HTTP requests"
)

OPEN_STREAMS = Gauge(
    "cycloud_event_streams_open",
    "Number of open auction event streams"
)

ACTIVE_AUCTIONS = Gauge(
    "cycloud_auctions_active",
    "Number of resources with a running auction coordinator"
)

BIDS_PLACED = Counter(
    "cycloud_bids_total",
    "Bid placements by admission outcome",
    ["outcome"]
)

AUCTION_OUTCOMES = Counter(
    "cycloud_auction_windows_total",
    "Closed auction windows by outcome",
    ["outcome"]
)

CREDITS_SETTLED = Counter(
    "cycloud_credits_settled_total",
    "Credits transferred from renters to loaners"
)

API_INFO = Info(
    "cycloud_api",
    "Information about the Cycloud market API"
)


async def metrics_middleware(request: Request, call_next: Callable) -> Response:
    """
    Middleware to collect metrics for each request.

    Args:
        request: The incoming request
        call_next: The next middleware or endpoint handler

    Returns:
        The response from the next handler
    """
    if request.url.path == "/metrics":
        return await call_next(request)

    method = request.method

    ACTIVE_REQUESTS.inc()
    start_time = time.time()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
    except Exception:
        logger.exception("Exception during request processing")
        raise
    finally:
        duration = time.time() - start_time
        # Route templates keep path parameters out of the labels
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(duration)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status_code=status_code).inc()
        ACTIVE_REQUESTS.dec()

    return response


async def metrics_endpoint(request: Request):
    """Expose Prometheus metrics in text format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def setup_metrics(app: FastAPI, environment: str = "development"):
    """
    Set up metrics collection and exposure for a FastAPI app.

    Args:
        app: The FastAPI application
        environment: Deployment environment reported in the info metric
    """
    API_INFO.info({
        "version": app.version,
        "title": app.title,
        "environment": environment,
    })
    app.middleware("http")(metrics_middleware)
    app.add_route("/metrics", metrics_endpoint)
    logger.info("Prometheus metrics configured and exposed at /metrics")


def record_bid(outcome: str):
    BIDS_PLACED.labels(outcome=outcome).inc()


def record_auction(outcome: str):
    AUCTION_OUTCOMES.labels(outcome=outcome).inc()


def record_settlement(amount: float):
    CREDITS_SETTLED.inc(amount)


def increment_open_streams():
    OPEN_STREAMS.inc()


def decrement_open_streams():
    OPEN_STREAMS.dec()


def set_active_auctions(count: int):
    ACTIVE_AUCTIONS.set(count)
