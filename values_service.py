"""
Values API — stub service used as the target of the load harness.
- /api/values returns a fixed pair of values.
- /api/values/slow waits SLOW_DELAY_SECONDS (non-blocking) before answering.
- POST/PUT/DELETE accept their input and do nothing.
- Observability: /metrics (Prometheus) and /health.
- Served over plaintext HTTP and, with a certificate configured, over TLS.
"""
import os
import time
import asyncio
import logging
from datetime import datetime
from typing import List

import uvicorn
from fastapi import Body, FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

SLOW_DELAY_SECONDS = float(os.getenv("SLOW_DELAY_SECONDS", "1.0"))
SERVICE_HOST = os.getenv("SERVICE_HOST", "localhost")
HTTP_PORT = int(os.getenv("HTTP_PORT", "58526"))
HTTPS_PORT = int(os.getenv("HTTPS_PORT", "44398"))
SSL_CERTFILE = os.getenv("SSL_CERTFILE")
SSL_KEYFILE = os.getenv("SSL_KEYFILE")

logger = logging.getLogger("values_service")

M_REQUESTS = Counter("values_requests_total", "Requests served", ["route"])
M_IN_FLIGHT = Gauge("values_requests_in_flight", "Requests currently being served")
M_SLOW_LATENCY = Histogram("values_slow_latency_seconds", "Latency of the slow route")

app = FastAPI(title="Values API")
_in_flight = 0


@app.middleware("http")
async def track_in_flight(request: Request, call_next):
    global _in_flight
    _in_flight += 1
    M_IN_FLIGHT.inc()
    try:
        return await call_next(request)
    finally:
        _in_flight -= 1
        M_IN_FLIGHT.dec()


def _timestamp() -> str:
    return datetime.now().astimezone().isoformat()


@app.get("/api/values")
async def get_values() -> List[str]:
    M_REQUESTS.labels(route="values").inc()
    return ["value1", "value2"]


# declared before /{id}, which accepts any id
@app.get("/api/values/slow")
async def get_slow_values() -> List[str]:
    M_REQUESTS.labels(route="slow").inc()
    with M_SLOW_LATENCY.time():
        await asyncio.sleep(SLOW_DELAY_SECONDS)
    now = _timestamp()
    return [f"value1-{now}", f"value2-{now}"]


@app.get("/api/values/{id}")
async def get_value(id: str) -> str:
    M_REQUESTS.labels(route="value").inc()
    return "value"


@app.post("/api/values")
async def post_value(value: str = Body(None)):
    M_REQUESTS.labels(route="post").inc()
    return Response(status_code=200)


@app.put("/api/values/{id}")
async def put_value(id: str, value: str = Body(None)):
    M_REQUESTS.labels(route="put").inc()
    return Response(status_code=200)


@app.delete("/api/values/{id}")
async def delete_value(id: str):
    M_REQUESTS.labels(route="delete").inc()
    return Response(status_code=200)


@app.get("/metrics")
async def metrics():
    data = generate_latest()
    return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "requests_in_flight": _in_flight,
    }


def build_servers():
    """Uvicorn servers for the plaintext port and, when a certificate is set, the TLS port."""
    servers = [
        uvicorn.Server(uvicorn.Config(app, host=SERVICE_HOST, port=HTTP_PORT, log_level="info"))
    ]
    if SSL_CERTFILE and SSL_KEYFILE:
        servers.append(uvicorn.Server(uvicorn.Config(
            app, host=SERVICE_HOST, port=HTTPS_PORT, log_level="info",
            ssl_certfile=SSL_CERTFILE, ssl_keyfile=SSL_KEYFILE,
        )))
    else:
        logger.warning("SSL_CERTFILE/SSL_KEYFILE not set; TLS listener disabled")
    return servers


async def serve():
    servers = build_servers()
    started = time.time()
    logger.info(f"Values API listening on {SERVICE_HOST} ports {[s.config.port for s in servers]}")
    try:
        await asyncio.gather(*(s.serve() for s in servers))
    finally:
        logger.info(f"Values API stopped after {time.time() - started:.1f}s")


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    asyncio.run(serve())


if __name__ == "__main__":
    main()
