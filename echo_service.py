"""
Echo upstream used as a dispatch target for demos and integration tests.
- /echo answers GET/POST/PUT/PATCH/DELETE with what it received (201 on POST).
- /ok, /text, /status/{code}, /slow cover JSON, plain text, HTTP errors and latency.
- Observability: /metrics (Prometheus) and /health.
"""
import os
import json
import random
import asyncio
import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import Counter, CONTENT_TYPE_LATEST, generate_latest

ECHO_HOST = os.getenv("ECHO_HOST", "127.0.0.1")
ECHO_PORT = int(os.getenv("ECHO_PORT", "8000"))
SIM_JITTER = float(os.getenv("SIM_JITTER", "0.0"))
MAX_DELAY = float(os.getenv("MAX_DELAY", "30.0"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("echo_service")

M_ECHO_RECEIVED = Counter("echo_requests_received_total", "Requests received by the echo service")
M_ECHO_AUTHORIZED = Counter("echo_requests_authorized_total", "Requests carrying a bearer token")

app = FastAPI(title="Dispatch echo upstream")


async def _jitter():
    if SIM_JITTER > 0:
        await asyncio.sleep(random.uniform(0, SIM_JITTER))


async def _read_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


def _bearer(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth[len("Bearer "):]


@app.api_route("/echo", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def echo(request: Request):
    M_ECHO_RECEIVED.inc()
    await _jitter()
    token = _bearer(request)
    if token:
        M_ECHO_AUTHORIZED.inc()
    body = await _read_body(request)
    logger.debug(f"ECHO {request.method} authorized={token is not None} body={body!r}")
    status = 201 if request.method == "POST" else 200
    return JSONResponse(status_code=status, content={
        "method": request.method,
        "authorized": token is not None,
        "contentType": request.headers.get("content-type"),
        "body": body,
    })


@app.get("/ok")
async def ok():
    M_ECHO_RECEIVED.inc()
    await _jitter()
    return {"x": 1}


@app.get("/text")
async def text():
    M_ECHO_RECEIVED.inc()
    return PlainTextResponse("plain text, not json")


@app.api_route("/status/{code}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def status(code: int):
    M_ECHO_RECEIVED.inc()
    if code < 200 or code > 599:
        raise HTTPException(status_code=400, detail=f"Invalid status code {code}")
    return Response(status_code=code)


@app.get("/slow")
async def slow(delay: float = Query(0.1, ge=0.0)):
    M_ECHO_RECEIVED.inc()
    if delay > MAX_DELAY:
        raise HTTPException(status_code=400, detail=f"delay above {MAX_DELAY}s")
    await asyncio.sleep(delay)
    return {"delay": delay}


@app.get("/metrics")
async def metrics():
    data = generate_latest()
    return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health():
    return {"status": "ok"}


def run(host: str = ECHO_HOST, port: int = ECHO_PORT):
    import uvicorn
    logger.info(f"Echo service listening on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
