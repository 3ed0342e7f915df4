#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import os
import json
import asyncio
import logging
from typing import Any, Dict, List, Optional

import click

from request_dispatcher import (
    ConfigError,
    RequestDispatcher,
    RequestResult,
    get_defaults,
    mask_token,
    summarize,
)
from reporting import (
    console,
    display_prettified_results,
    error_panel,
    print_results,
    print_summary,
    save_results_to_file,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING")


def _load_payloads(path: str) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        overrides = json.load(f)
    if not isinstance(overrides, list):
        raise ConfigError(f"{path}: expected a JSON array of per-request overrides")
    return overrides


def _batch_override(endpoint, method, token, body) -> Dict[str, Any]:
    override: Dict[str, Any] = {}
    if endpoint:
        override["endpoint"] = endpoint
    if method:
        override["method"] = method
    if token is not None:
        override["token"] = token
    if body is not None:
        try:
            override["body"] = json.loads(body)
        except ValueError:
            override["body"] = body
    return override


async def _run_policies(dispatcher: RequestDispatcher, n: int, overrides: Optional[List[Dict[str, Any]]],
                        batch: Dict[str, Any], policy: str) -> Dict[str, List[RequestResult]]:
    runs: Dict[str, List[RequestResult]] = {}
    if policy in ("all", "both"):
        runs["all"] = await dispatcher.dispatch(n, overrides, batch_override=batch)
    if policy in ("settled", "both"):
        runs["settled"] = await dispatcher.dispatch_settled(n, overrides, batch_override=batch)
    return runs


# ========== CLI with Click ==========

@click.group()
@click.option("--debug", "-d", is_flag=True, help="Log every request.")
def cli(debug):
    """
    concurrent-requests: fire N concurrent HTTP requests and report on them.
    """
    logging.basicConfig(level="DEBUG" if debug else LOG_LEVEL,
                        format="%(asctime)s %(levelname)s %(message)s")


@cli.command("run")
@click.argument("count", type=click.IntRange(min=1), default=5)
@click.option("--policy", type=click.Choice(["all", "settled", "both"]), default="both", show_default=True,
              help="all: gather every result; settled: also turn rejected slots into failed records.")
@click.option("--endpoint", help="Target URL (default from DISPATCH_ENDPOINT).")
@click.option("--method", type=click.Choice(["GET", "POST", "PUT", "PATCH", "DELETE"], case_sensitive=False))
@click.option("--token", help="Bearer token; blank means no Authorization header.")
@click.option("--body", help="Request body, JSON or raw text (POST/PUT/PATCH only).")
@click.option("--payloads", "payloads_file", type=click.Path(exists=True, dir_okay=False),
              help="JSON array of per-request overrides; short arrays are padded with the last entry.")
@click.option("--save", "-s", "save", is_flag=False, flag_value="", default=None,
              help="Save the results as JSON (optional filename).")
@click.option("--pretty", "-p", is_flag=True, help="Print every result as prettified JSON.")
@click.option("--preview", is_flag=True, help="With --pretty, truncate response data.")
def run_cmd(count, policy, endpoint, method, token, body, payloads_file, save, pretty, preview):
    """Send COUNT concurrent requests."""
    try:
        overrides = _load_payloads(payloads_file) if payloads_file else None
        batch = _batch_override(endpoint, method, token, body)
        dispatcher = RequestDispatcher()
        first = dispatcher.resolve(count, overrides, batch)[0]
        console.rule(f"[info]{count} concurrent {first.method} requests[/info]")
        console.print(f"[info]Endpoint:[/info] {first.endpoint}")
        console.print(f"[info]Token:[/info] {mask_token(first.token)}")
        runs = asyncio.run(_run_policies(dispatcher, count, overrides, batch, policy))
    except (ConfigError, OSError, ValueError) as e:
        error_panel("Configuration error", str(e))
        raise SystemExit(1)

    for name, results in runs.items():
        print_summary(summarize(results), title=f"Results ({name})")
        print_results(results)

    primary = runs.get("all") or runs["settled"]
    if save is not None:
        try:
            path = save_results_to_file(primary, save or None)
        except OSError as e:
            error_panel("Failed to save results", str(e))
            raise SystemExit(1)
        console.print(f"[ok]Results saved to:[/ok] {path}")
    if pretty:
        display_prettified_results(primary, show_full_data=not preview)
    console.print(f"[ok]All {count} requests completed![/ok]")


@cli.command("defaults")
def defaults_cmd():
    """Show the default request config."""
    cfg = get_defaults()
    console.print(f"[info]Endpoint:[/info] {cfg.endpoint}")
    console.print(f"[info]Method:[/info] {cfg.method}")
    console.print(f"[info]Token:[/info] {mask_token(cfg.token)}")


@cli.command("serve")
@click.option("--host", default=None, help="Bind address (default from ECHO_HOST).")
@click.option("--port", type=int, default=None, help="Port (default from ECHO_PORT).")
def serve_cmd(host, port):
    """Run the echo upstream."""
    import echo_service
    echo_service.run(host or echo_service.ECHO_HOST, port or echo_service.ECHO_PORT)


def main():
    cli(prog_name="concurrent-requests")


if __name__ == "__main__":
    main()
