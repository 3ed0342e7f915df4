"""
Concurrent request dispatcher.
- Resolves one effective config per slot (defaults < batch override < slot override).
- Fires all N requests at once over httpx and waits for every one of them.
- Every request ends up as a RequestResult; transport, HTTP and parse errors are data.
- Two aggregation policies: all-or-summarize (dispatch) and settled (dispatch_settled).
- No timeout, no retries, no concurrency cap.
"""
import os
import json
import time
import asyncio
import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import httpx
from prometheus_client import Counter, Gauge, Histogram

DEFAULT_ENDPOINT = os.getenv("DISPATCH_ENDPOINT", "http://localhost:8000/echo")
DEFAULT_METHOD = os.getenv("DISPATCH_METHOD", "GET")
DEFAULT_TOKEN = os.getenv("DISPATCH_TOKEN", "")

METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
BODY_METHODS = ("POST", "PUT", "PATCH")
CONFIG_KEYS = ("endpoint", "method", "token", "body")

logger = logging.getLogger("request_dispatcher")

M_REQ_DISPATCHED = Counter("dispatch_requests_total", "Requests dispatched")
M_REQ_SUCCEEDED = Counter("dispatch_requests_succeeded_total", "Requests answered with 2xx")
M_REQ_FAILED = Counter("dispatch_requests_failed_total", "Requests failed (HTTP or transport)")
M_REQ_REJECTED = Counter("dispatch_requests_rejected_total", "Slots rejected outside the request guard")
M_REQ_LATENCY = Histogram("dispatch_request_latency_seconds", "Per-request latency")
M_INFLIGHT = Gauge("dispatch_inflight_requests", "Requests currently in flight")


class ConfigError(ValueError):
    """Invalid dispatch arguments. Raised before anything is sent."""


def mask_token(token: Optional[str]) -> str:
    if not has_token(token):
        return "<none>"
    return f"{token[:20]}..."


def has_token(token: Optional[str]) -> bool:
    return isinstance(token, str) and bool(token.strip())


@dataclass(frozen=True)
class RequestConfig:
    endpoint: str
    method: str = "GET"
    token: Optional[str] = None
    body: Any = None

    def merged(self, override: Optional[Mapping[str, Any]]) -> "RequestConfig":
        if not override:
            return self
        return replace(self, **dict(override))

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if has_token(self.token):
            headers["Authorization"] = f"Bearer {self.token}"
        if self.sends_body():
            headers["Content-Type"] = "application/json"
        return headers

    def sends_body(self) -> bool:
        return self.method in BODY_METHODS and self.body is not None

    def content(self) -> Optional[bytes]:
        if not self.sends_body():
            return None
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return json.dumps(self.body).encode("utf-8")


@dataclass(frozen=True)
class Single:
    """Same override for every slot."""
    override: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PerSlot:
    """One override per slot; a short list is padded with its last element."""
    overrides: Sequence[Mapping[str, Any]] = ()


OverrideSpec = Union[Single, PerSlot]


def _as_override(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, RequestConfig):
        return value.as_dict()
    if not isinstance(value, Mapping):
        raise ConfigError(f"{where} must be a mapping or RequestConfig, got {type(value).__name__}")
    unknown = sorted(set(value) - set(CONFIG_KEYS))
    if unknown:
        raise ConfigError(f"{where} has unknown keys: {', '.join(unknown)}")
    return dict(value)


def as_override_spec(value: Any) -> OverrideSpec:
    if isinstance(value, (Single, PerSlot)):
        return value
    if value is None:
        return Single({})
    if isinstance(value, (list, tuple)):
        return PerSlot(tuple(value))
    return Single(value)


def _validate(config: RequestConfig, slot: int) -> RequestConfig:
    if not isinstance(config.endpoint, str) or not config.endpoint.strip():
        raise ConfigError(f"slot {slot}: endpoint is required")
    method = str(config.method or "").upper()
    if method not in METHODS:
        raise ConfigError(f"slot {slot}: unsupported method {config.method!r}")
    if method != config.method:
        config = replace(config, method=method)
    return config


class DefaultsStore:
    """Process-wide default config with an explicit init/get/set contract.

    Dispatch calls read the defaults once, when they resolve their configs. A
    set() racing with a dispatch that is resolving is last-write-wins; nothing
    here locks against that.
    """

    def __init__(self, config: Optional[RequestConfig] = None):
        self._config = config or self.from_env()

    @staticmethod
    def from_env() -> RequestConfig:
        return RequestConfig(
            endpoint=DEFAULT_ENDPOINT,
            method=DEFAULT_METHOD.upper(),
            token=DEFAULT_TOKEN or None,
        )

    def init(self, config: Optional[RequestConfig] = None) -> RequestConfig:
        self._config = config or self.from_env()
        return self._config

    def get(self) -> RequestConfig:
        return self._config

    def set(self, partial: Mapping[str, Any]) -> RequestConfig:
        override = _as_override(partial, "defaults")
        self._config = self._config.merged(override)
        shown = dict(self._config.as_dict(), token=mask_token(self._config.token))
        logger.info(f"Default config updated: {shown}")
        return self._config


DEFAULTS = DefaultsStore()


def resolve_configs(n: int, override_spec: Any = None, *,
                    defaults: Optional[RequestConfig] = None,
                    batch_override: Optional[Mapping[str, Any]] = None) -> List[RequestConfig]:
    if isinstance(n, bool) or not isinstance(n, int):
        raise ConfigError(f"number of requests must be an integer, got {n!r}")
    if n < 1:
        raise ConfigError(f"number of requests must be >= 1, got {n}")

    spec = as_override_spec(override_spec)
    if isinstance(spec, PerSlot):
        if not spec.overrides:
            raise ConfigError("per-slot override list is empty")
        overrides = [_as_override(o, f"override #{i + 1}") for i, o in enumerate(spec.overrides[:n])]
        while len(overrides) < n:
            overrides.append(overrides[-1])
    else:
        overrides = [_as_override(spec.override, "override")] * n

    base = (defaults or DEFAULTS.get()).merged(_as_override(batch_override, "batch override"))
    return [_validate(base.merged(o), slot) for slot, o in enumerate(overrides, start=1)]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


@dataclass
class RequestResult:
    request_id: int
    method: str
    endpoint: str
    request_body: Any
    success: bool
    status: Optional[int] = None
    status_text: Optional[str] = None
    duration_ms: Optional[int] = None
    timestamp: str = field(default_factory=now_iso)
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def rejected(cls, slot: int, config: RequestConfig, exc: BaseException) -> "RequestResult":
        return cls(
            request_id=slot,
            method=config.method,
            endpoint=config.endpoint,
            request_body=config.body,
            success=False,
            error=f"Request rejected: {_describe(exc)}",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "method": self.method,
            "endpoint": self.endpoint,
            "requestBody": self.request_body,
            "success": self.success,
            "status": self.status,
            "statusText": self.status_text,
            "durationMs": self.duration_ms if self.duration_ms is not None else "N/A",
            "timestamp": self.timestamp,
            "data": self.data,
            "error": self.error,
        }


@dataclass
class BatchSummary:
    total: int
    successful: int
    failed: int
    success_rate: str
    average_response_ms: float = 0.0
    total_duration_ms: Optional[int] = None

    @property
    def requests_per_second(self) -> Optional[float]:
        if not self.total_duration_ms:
            return None
        return self.total / (self.total_duration_ms / 1000)


def summarize(results: Sequence[RequestResult], total_duration_ms: Optional[int] = None) -> BatchSummary:
    total = len(results)
    ok = [r for r in results if r.success]
    timings = [r.duration_ms for r in ok if r.duration_ms is not None]
    rate = (len(ok) / total * 100) if total else 0.0
    return BatchSummary(
        total=total,
        successful=len(ok),
        failed=total - len(ok),
        success_rate=f"{rate:.1f}%",
        average_response_ms=(sum(timings) / len(timings)) if timings else 0.0,
        total_duration_ms=total_duration_ms,
    )


def open_client() -> httpx.AsyncClient:
    # no deadline of our own; redirects are followed to the final response
    return httpx.AsyncClient(timeout=None, follow_redirects=True)


def _parse_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except Exception:
        return resp.text


class RequestDispatcher:
    """Fans N requests out over one AsyncClient and collects N results in slot order.

    `client` is used as-is when given (and left open); otherwise a client
    without a timeout is opened for each dispatch call. `defaults` replaces
    the process-wide DEFAULTS for this dispatcher.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None,
                 defaults: Optional[RequestConfig] = None):
        self.client = client
        self.defaults = defaults

    def resolve(self, n: int, override_spec: Any = None,
                batch_override: Optional[Mapping[str, Any]] = None) -> List[RequestConfig]:
        return resolve_configs(n, override_spec, defaults=self.defaults, batch_override=batch_override)

    async def execute_one(self, slot: int, config: RequestConfig,
                          client: Optional[httpx.AsyncClient] = None) -> RequestResult:
        if client is None:
            client = self.client
        if client is None:
            async with open_client() as own:
                return await self.execute_one(slot, config, own)
        result = RequestResult(
            request_id=slot,
            method=config.method,
            endpoint=config.endpoint,
            request_body=config.body,
            success=False,
        )
        M_REQ_DISPATCHED.inc()
        M_INFLIGHT.inc()
        logger.info(f"Starting {config.method} request {slot} to {config.endpoint}")
        start = time.perf_counter()
        try:
            resp = await client.request(
                config.method,
                config.endpoint,
                headers=config.headers(),
                content=config.content(),
            )
            result.status = resp.status_code
            result.status_text = resp.reason_phrase
            if resp.is_success:
                result.success = True
                result.data = _parse_body(resp)
            else:
                result.error = f"HTTP {resp.status_code}: {resp.reason_phrase}"
        except Exception as e:
            result.error = _describe(e)
        finally:
            elapsed = time.perf_counter() - start
            M_INFLIGHT.dec()
            M_REQ_LATENCY.observe(elapsed)
            result.duration_ms = int(round(elapsed * 1000))
            result.timestamp = now_iso()

        if result.success:
            M_REQ_SUCCEEDED.inc()
            logger.info(f"Request {slot} completed with {result.status} ({result.duration_ms}ms)")
        else:
            M_REQ_FAILED.inc()
            logger.warning(f"Request {slot} failed: {result.error} ({result.duration_ms}ms)")
        return result

    async def _fan_out(self, configs: List[RequestConfig], settled: bool) -> List[Any]:
        if self.client is not None:
            return await self._gather(self.client, configs, settled)
        async with open_client() as client:
            return await self._gather(client, configs, settled)

    async def _gather(self, client: httpx.AsyncClient, configs: List[RequestConfig], settled: bool) -> List[Any]:
        tasks = [self.execute_one(slot, cfg, client) for slot, cfg in enumerate(configs, start=1)]
        return await asyncio.gather(*tasks, return_exceptions=settled)

    def _announce(self, configs: List[RequestConfig], policy: str):
        first = configs[0]
        logger.info(f"Starting {len(configs)} concurrent {first.method} requests ({policy}) "
                    f"to {first.endpoint}, token {mask_token(first.token)}")
        payloads = {json.dumps(c.body, sort_keys=True, default=str) for c in configs}
        if len(payloads) > 1:
            logger.info(f"Using {len(payloads)} different payloads across {len(configs)} requests")

    async def dispatch(self, n: int, override_spec: Any = None, *,
                       batch_override: Optional[Mapping[str, Any]] = None) -> List[RequestResult]:
        """All-or-summarize: every slot runs to completion, results come back in slot order."""
        configs = self.resolve(n, override_spec, batch_override)
        self._announce(configs, "all")
        start = time.perf_counter()
        results = await self._fan_out(configs, settled=False)
        self._log_summary(results, start, "all")
        return results

    async def dispatch_settled(self, n: int, override_spec: Any = None, *,
                               batch_override: Optional[Mapping[str, Any]] = None) -> List[RequestResult]:
        """Like dispatch, but a slot whose execution itself blows up becomes a failed record."""
        configs = self.resolve(n, override_spec, batch_override)
        self._announce(configs, "settled")
        start = time.perf_counter()
        settled = await self._fan_out(configs, settled=True)
        results = []
        for slot, (cfg, outcome) in enumerate(zip(configs, settled), start=1):
            if isinstance(outcome, BaseException):
                M_REQ_REJECTED.inc()
                logger.error(f"Request {slot} rejected: {_describe(outcome)}")
                outcome = RequestResult.rejected(slot, cfg, outcome)
            results.append(outcome)
        self._log_summary(results, start, "settled")
        return results

    def _log_summary(self, results: List[RequestResult], start: float, policy: str):
        summary = summarize(results, total_duration_ms=int(round((time.perf_counter() - start) * 1000)))
        logger.info(f"Batch done ({policy}): {summary.successful}/{summary.total} succeeded, "
                    f"{summary.failed} failed, success rate {summary.success_rate}, "
                    f"{summary.total_duration_ms}ms total")


def get_defaults() -> RequestConfig:
    return DEFAULTS.get()


def set_defaults(partial: Mapping[str, Any]) -> RequestConfig:
    return DEFAULTS.set(partial)


def init_defaults(config: Optional[RequestConfig] = None) -> RequestConfig:
    return DEFAULTS.init(config)


async def execute_one(slot: int, config: RequestConfig,
                      client: Optional[httpx.AsyncClient] = None) -> RequestResult:
    return await RequestDispatcher(client).execute_one(slot, config)


async def dispatch(n: int, override_spec: Any = None, *,
                   batch_override: Optional[Mapping[str, Any]] = None,
                   client: Optional[httpx.AsyncClient] = None) -> List[RequestResult]:
    return await RequestDispatcher(client).dispatch(n, override_spec, batch_override=batch_override)


async def dispatch_settled(n: int, override_spec: Any = None, *,
                           batch_override: Optional[Mapping[str, Any]] = None,
                           client: Optional[httpx.AsyncClient] = None) -> List[RequestResult]:
    return await RequestDispatcher(client).dispatch_settled(n, override_spec, batch_override=batch_override)
