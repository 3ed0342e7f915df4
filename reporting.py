import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from request_dispatcher import BatchSummary, RequestResult, now_iso, summarize

logger = logging.getLogger("request_dispatcher.reporting")

# ========== UI Theme ==========
custom_theme = Theme({
    "ok":   "bold green",
    "warn": "bold yellow",
    "err":  "bold red",
    "info": "bold cyan",
})
console = Console(theme=custom_theme)

PREVIEW_CHARS = 200


def error_panel(title: str, msg: str, out: Optional[Console] = None):
    (out or console).print(Panel.fit(Text(msg, no_wrap=False), title=title, border_style="red"))


def build_artifact(results: Sequence[RequestResult]) -> Dict[str, Any]:
    summary = summarize(results)
    return {
        "metadata": {
            "timestamp": now_iso(),
            "totalRequests": summary.total,
            "successfulRequests": summary.successful,
            "failedRequests": summary.failed,
            "successRate": summary.success_rate,
            "averageResponseTime": round(summary.average_response_ms, 1),
        },
        "results": [r.to_dict() for r in results],
    }


def default_filename() -> str:
    stamp = now_iso().replace(":", "-").replace(".", "-")
    return f"api-results-{stamp}.json"


def save_results_to_file(results: Sequence[RequestResult], filename: Optional[str] = None) -> Path:
    path = Path(filename or default_filename())
    path.write_text(json.dumps(build_artifact(results), indent=2, default=str), encoding="utf-8")
    logger.info(f"Results saved to {path}")
    return path


def print_summary(summary: BatchSummary, title: str = "Results summary", out: Optional[Console] = None):
    out = out or console
    out.rule(f"[info]{title}[/info]")
    if summary.total_duration_ms is not None:
        out.print(f"Total execution time: {summary.total_duration_ms}ms")
    out.print(f"[ok]Successful requests:[/ok] {summary.successful}/{summary.total}")
    out.print(f"[err]Failed requests:[/err] {summary.failed}/{summary.total}")
    out.print(f"[info]Success rate:[/info] {summary.success_rate}")
    if summary.successful:
        out.print(f"Avg response time: {summary.average_response_ms:.1f}ms")
    rps = summary.requests_per_second
    if rps is not None:
        out.print(f"Requests per second: {rps:.2f}")


def _preview(data: Any) -> Optional[str]:
    if data is None:
        return None
    text = data if isinstance(data, str) else json.dumps(data, default=str)
    if len(text) <= PREVIEW_CHARS:
        return text
    return text[:PREVIEW_CHARS] + "..."


def print_results(results: Sequence[RequestResult], out: Optional[Console] = None):
    out = out or console
    table = Table(title="Requests")
    table.add_column("#", justify="right")
    table.add_column("Method")
    table.add_column("Outcome")
    table.add_column("HTTP")
    table.add_column("Duration", justify="right")
    table.add_column("Detail", overflow="fold")
    for r in results:
        outcome = "[ok]success[/ok]" if r.success else "[err]failed[/err]"
        duration = f"{r.duration_ms}ms" if r.duration_ms is not None else "N/A"
        detail = _preview(r.data) if r.success else r.error
        table.add_row(str(r.request_id), r.method, outcome, str(r.status or "N/A"), duration, Text(detail or ""))
    out.print(table)


def display_prettified_results(results: Sequence[RequestResult], show_full_data: bool = True,
                               out: Optional[Console] = None):
    out = out or console
    out.rule("[info]Prettified results[/info]")
    for r in results:
        out.rule(f"Request {r.request_id}", style="cyan")
        if show_full_data:
            out.print_json(json.dumps(r.to_dict(), default=str))
            continue
        row = r.to_dict()
        short = {
            "requestId": row["requestId"],
            "success": row["success"],
            "status": row["status"],
            "durationMs": row["durationMs"],
            "timestamp": row["timestamp"],
            "dataPreview": _preview(r.data),
            "error": row["error"],
        }
        out.print_json(json.dumps(short, default=str))
