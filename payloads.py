"""Shortcuts on top of the dispatcher: per-method batches and per-slot payloads."""
import copy
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from request_dispatcher import ConfigError, RequestDispatcher, RequestResult, now_iso

logger = logging.getLogger("request_dispatcher.payloads")

VariationFn = Callable[[Dict[str, Any], int], Dict[str, Any]]


def _dispatcher(dispatcher: Optional[RequestDispatcher]) -> RequestDispatcher:
    return dispatcher or RequestDispatcher()


def _method_config(method: str, endpoint: Optional[str], token: Optional[str], **extra) -> Dict[str, Any]:
    config: Dict[str, Any] = {"method": method, **extra}
    if endpoint:
        config["endpoint"] = endpoint
    if token:
        config["token"] = token
    return config


async def send_n_requests(n: int, config: Optional[Mapping[str, Any]] = None,
                          dispatcher: Optional[RequestDispatcher] = None) -> List[RequestResult]:
    return await _dispatcher(dispatcher).dispatch(n, config)


async def send_get_requests(n: int = 5, endpoint: Optional[str] = None, token: Optional[str] = None,
                            dispatcher: Optional[RequestDispatcher] = None) -> List[RequestResult]:
    return await _dispatcher(dispatcher).dispatch(n, _method_config("GET", endpoint, token))


async def send_post_requests(n: int = 5, body: Any = None, endpoint: Optional[str] = None,
                             token: Optional[str] = None,
                             dispatcher: Optional[RequestDispatcher] = None) -> List[RequestResult]:
    return await _dispatcher(dispatcher).dispatch(n, _method_config("POST", endpoint, token, body=body))


async def send_put_requests(n: int = 5, body: Any = None, endpoint: Optional[str] = None,
                            token: Optional[str] = None,
                            dispatcher: Optional[RequestDispatcher] = None) -> List[RequestResult]:
    return await _dispatcher(dispatcher).dispatch(n, _method_config("PUT", endpoint, token, body=body))


async def send_patch_requests(n: int = 5, body: Any = None, endpoint: Optional[str] = None,
                              token: Optional[str] = None,
                              dispatcher: Optional[RequestDispatcher] = None) -> List[RequestResult]:
    return await _dispatcher(dispatcher).dispatch(n, _method_config("PATCH", endpoint, token, body=body))


async def send_delete_requests(n: int = 5, endpoint: Optional[str] = None, token: Optional[str] = None,
                               dispatcher: Optional[RequestDispatcher] = None) -> List[RequestResult]:
    return await _dispatcher(dispatcher).dispatch(n, _method_config("DELETE", endpoint, token))


async def send_requests_with_different_payloads(payloads: List[Any],
                                                base_config: Optional[Mapping[str, Any]] = None,
                                                dispatcher: Optional[RequestDispatcher] = None) -> List[RequestResult]:
    """One slot per payload, each slot = base_config with its own body."""
    if not isinstance(payloads, list) or not payloads:
        raise ConfigError("payloads must be a non-empty list")
    base = dict(base_config or {})
    configs = [dict(base, body=payload) for payload in payloads]
    return await _dispatcher(dispatcher).dispatch(len(configs), configs)


async def send_requests_with_payload_array(payloads: List[Dict[str, Any]],
                                           base_config: Optional[Mapping[str, Any]] = None,
                                           dispatcher: Optional[RequestDispatcher] = None) -> List[RequestResult]:
    if not isinstance(payloads, list) or not payloads:
        raise ConfigError("payload array must be a non-empty list")
    for i, payload in enumerate(payloads):
        if not isinstance(payload, dict):
            raise ConfigError(f"payload at index {i} must be a JSON object")
    logger.info(f"Processing {len(payloads)} payloads from array format")
    return await send_requests_with_different_payloads(payloads, base_config, dispatcher)


def _default_variation(payload: Dict[str, Any], i: int) -> Dict[str, Any]:
    if "id" in payload:
        payload["id"] = i + 1
    if "name" in payload:
        payload["name"] = f"{payload['name']} {i + 1}"
    if "email" in payload and "@" in str(payload["email"]):
        local, domain = str(payload["email"]).split("@", 1)
        payload["email"] = f"{local}{i + 1}@{domain}"
    payload["requestIndex"] = i + 1
    payload["timestamp"] = now_iso()
    return payload


def generate_payload_variations(base_payload: Dict[str, Any], count: int,
                                variation_fn: Optional[VariationFn] = None) -> List[Dict[str, Any]]:
    """Deep copies of base_payload, each passed through variation_fn(payload, index)."""
    if isinstance(count, bool) or not isinstance(count, int):
        raise ConfigError(f"count must be an integer, got {count!r}")
    if count < 1:
        raise ConfigError(f"count must be >= 1, got {count}")
    vary = variation_fn or _default_variation
    return [vary(copy.deepcopy(base_payload), i) for i in range(count)]


async def send_post_requests_with_variations(n: int, base_payload: Dict[str, Any],
                                             config: Optional[Mapping[str, Any]] = None,
                                             variation_fn: Optional[VariationFn] = None,
                                             dispatcher: Optional[RequestDispatcher] = None) -> List[RequestResult]:
    payloads = generate_payload_variations(base_payload, n, variation_fn)
    base = {"method": "POST", **dict(config or {})}
    return await send_requests_with_different_payloads(payloads, base, dispatcher)
