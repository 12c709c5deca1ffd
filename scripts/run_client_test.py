#!/usr/bin/env python3
"""API client integration test for the proposal pipeline server.

Exercises the API endpoints by acting as a pure HTTP client against a live
server (unlike ``simulate_pipeline.py`` which drives the SDK directly with
an in-memory store).  The server's stage workers must be reachable at its
configured ``WORKER_BASE_URL``.

Creates N pipelines with a random number of documents each, exercises
pause/resume (and optionally restart) on every one, then polls each
pipeline's status until it finishes or times out, flagging errors and
unexpected responses.

Usage::

    # Install deps (first time only)
    uv pip install httpx rich

    # Quick smoke test (1 pipeline)
    uv run python scripts/run_client_test.py -n 1 -v

    # 10 pipelines, restart each once, reproducible
    uv run python scripts/run_client_test.py -n 10 --restart --seed 42

    # Verbose debug run (full JSON payloads)
    uv run python scripts/run_client_test.py -n 1 -vv
"""

from __future__ import annotations

import argparse
import asyncio
import json
import random
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx
from rich.console import Console
from rich.table import Table

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

API_PREFIX = "/api/v1"

FILE_NAME_POOL = [
    "rfp_main.pdf", "technical_annex.docx", "budget.xlsx",
    "timeline.pdf", "evaluation_criteria.pdf", "contract_draft.docx",
    "security_requirements.pdf", "appendix_a.pdf", "appendix_b.pdf",
]

QUESTION_CATEGORIES = ["technical", "business", "risks", "budget", "timeline"]


# ---------------------------------------------------------------------------
# PipelineResult: outcome of one pipeline run
# ---------------------------------------------------------------------------

@dataclass
class PipelineResult:
    """What happened to one pipeline, for the summary table."""

    session_id: str
    documents: int
    status: str = "incomplete"   # "success" | "failed" | "incomplete" | "error"
    final_stage: str | None = None
    overall_progress: float = 0.0
    document_outcome: str | None = None
    polls: int = 0
    elapsed: float = 0.0
    stage_statuses: dict[str, str] = field(default_factory=dict)
    error: str | None = None


# ---------------------------------------------------------------------------
# APIClient: thin async wrapper over the server's endpoints
# ---------------------------------------------------------------------------

class APIClient:
    """Async HTTP client for the pipeline API."""

    def __init__(self, base_url: str, timeout: float = 30.0):
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def __aenter__(self) -> "APIClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self._client.aclose()

    async def health_check(self) -> bool:
        try:
            resp = await self._client.get("/health")
        except httpx.HTTPError:
            return False
        return resp.status_code == 200 and resp.json().get("status") == "ok"

    async def create_pipeline(self, payload: dict) -> httpx.Response:
        return await self._client.post(f"{API_PREFIX}/pipelines", json=payload)

    async def get_pipeline(self, session_id: str) -> httpx.Response:
        return await self._client.get(f"{API_PREFIX}/pipelines/{session_id}")

    async def control(self, session_id: str, action: str) -> httpx.Response:
        return await self._client.post(f"{API_PREFIX}/pipelines/{session_id}/{action}")

    async def activity(self, session_id: str) -> httpx.Response:
        return await self._client.get(f"{API_PREFIX}/pipelines/{session_id}/activity")

    async def delete_pipeline(self, session_id: str) -> httpx.Response:
        return await self._client.delete(f"{API_PREFIX}/pipelines/{session_id}")


# ---------------------------------------------------------------------------
# RichPrinter: verbosity-aware console output
# ---------------------------------------------------------------------------

class RichPrinter:
    """Verbosity-aware console output using rich."""

    def __init__(self, verbosity: int = 0):
        self.console = Console()
        self.verbosity = verbosity

    def pipeline_header(self, index: int, total: int, session_id: str, documents: int) -> None:
        self.console.print(
            f"\n[bold cyan][{index}/{total}][/] {session_id} ({documents} documents)"
        )

    def step_ok(self, name: str, detail: str) -> None:
        self.console.print(f"  [green]✓[/] {name}: {detail}")

    def step_error(self, name: str, detail: str) -> None:
        self.console.print(f"  [red]✗[/] {name}: {detail}")

    def progress(self, status: dict) -> None:
        """Print one status poll (verbosity >= 1)."""
        if self.verbosity < 1:
            return
        docs = status["documents"]
        self.console.print(
            f"    [dim]{status['current_stage']:<20s}[/] "
            f"{status['overall_progress']:5.1f}%  "
            f"docs {docs['completed_count']}/{docs['total_count']} "
            f"(err {docs['error_count']})  cadence={status['poll_cadence']}"
        )

    def result_line(self, result: PipelineResult) -> None:
        if result.status == "success":
            status_str = "[green]OK[/]"
        elif result.status in ("failed", "error"):
            status_str = f"[red]{result.status.upper()}[/]: {result.error}"
        else:
            status_str = f"[yellow]{result.status.upper()}[/]"
        self.console.print(
            f"  → Result: {result.final_stage} {result.overall_progress:.1f}% "
            f"in {result.elapsed:.1f}s — {status_str}"
        )

    def json_payload(self, label: str, data: Any) -> None:
        """Print full JSON payload (verbosity >= 2)."""
        if self.verbosity < 2:
            return
        formatted = json.dumps(data, ensure_ascii=False, indent=2)
        self.console.print(f"    [dim]{label}:[/]")
        self.console.print(f"    {formatted}")

    def warning(self, msg: str) -> None:
        self.console.print(f"  [yellow]![/] {msg}")

    def error(self, msg: str) -> None:
        self.console.print(f"  [red]ERROR[/] {msg}")


# ---------------------------------------------------------------------------
# PipelineRunner: drives one pipeline start-to-finish
# ---------------------------------------------------------------------------

class PipelineRunner:
    """Creates one pipeline, exercises its controls and waits for the end."""

    def __init__(
        self,
        client: APIClient,
        printer: RichPrinter,
        rng: random.Random,
        *,
        restart: bool,
        poll_interval: float,
        max_wait: float,
    ):
        self._client = client
        self._printer = printer
        self._rng = rng
        self._restart = restart
        self._poll_interval = poll_interval
        self._max_wait = max_wait

    def _payload(self, session_id: str, documents: int) -> dict:
        names = self._rng.sample(FILE_NAME_POOL, k=min(documents, len(FILE_NAME_POOL)))
        return {
            "session_id": session_id,
            "project_id": f"proj-{self._rng.randint(1, 5)}",
            "documents": [
                {"document_id": str(uuid.uuid4()), "file_name": names[i % len(names)]}
                for i in range(documents)
            ],
            "metadata": {"source": "run_client_test"},
            "question_options": {
                "categories": self._rng.sample(QUESTION_CATEGORIES, k=3),
                "max_questions": self._rng.choice([10, 20, 30]),
            },
        }

    async def _expect(self, name: str, resp: httpx.Response, status_code: int) -> bool:
        if resp.status_code != status_code:
            self._printer.step_error(name, f"HTTP {resp.status_code}: {resp.text}")
            return False
        self._printer.step_ok(name, f"HTTP {resp.status_code}")
        return True

    async def run(self, session_id: str, documents: int) -> PipelineResult:
        result = PipelineResult(session_id=session_id, documents=documents)
        started = time.monotonic()
        client = self._client

        payload = self._payload(session_id, documents)
        self._printer.json_payload("Create payload", payload)
        resp = await client.create_pipeline(payload)
        if not await self._expect("create", resp, 201):
            result.status = "error"
            result.error = f"create returned {resp.status_code}"
            return result

        # --- Duplicate create must conflict ---
        resp = await client.create_pipeline(payload)
        await self._expect("duplicate create", resp, 409)

        # --- Pause / resume round-trip ---
        resp = await client.control(session_id, "pause")
        if await self._expect("pause", resp, 200) and not resp.json()["paused"]:
            self._printer.warning("pause did not report paused=true")
        resp = await client.control(session_id, "resume")
        await self._expect("resume", resp, 200)

        if self._restart:
            resp = await client.control(session_id, "restart")
            if await self._expect("restart", resp, 200) and resp.json()["run_id"] != 1:
                self._printer.warning(f"restart reported run_id={resp.json()['run_id']}")

        # --- Poll until finished ---
        status: dict = {}
        while time.monotonic() - started < self._max_wait:
            await asyncio.sleep(self._poll_interval)
            resp = await client.get_pipeline(session_id)
            result.polls += 1
            if resp.status_code != 200:
                result.status = "error"
                result.error = f"status returned {resp.status_code}"
                break
            status = resp.json()
            self._printer.progress(status)
            if status["finished"]:
                break

        result.elapsed = time.monotonic() - started
        if status:
            result.final_stage = status["current_stage"]
            result.overall_progress = status["overall_progress"]
            result.document_outcome = status.get("document_outcome")
            result.stage_statuses = {
                name: stage["status"] for name, stage in status["stages"].items()
            }
            if status["finished"]:
                failed = [n for n, s in result.stage_statuses.items() if s == "failed"]
                result.status = "failed" if failed else "success"
                if failed:
                    result.error = status["stages"][failed[0]].get("message")
            self._printer.json_payload("Final status", status)

        resp = await client.activity(session_id)
        if resp.status_code == 200:
            self._printer.json_payload("Activity", resp.json())

        resp = await client.delete_pipeline(session_id)
        await self._expect("delete", resp, 204)
        resp = await client.get_pipeline(session_id)
        await self._expect("status after delete", resp, 404)

        self._printer.result_line(result)
        return result


# ---------------------------------------------------------------------------
# ResultCollector: aggregates results across all pipelines
# ---------------------------------------------------------------------------

class ResultCollector:
    """Collect and aggregate pipeline results for the final summary."""

    def __init__(self) -> None:
        self.results: list[PipelineResult] = []

    def add(self, result: PipelineResult) -> None:
        self.results.append(result)

    @property
    def total(self) -> int:
        return len(self.results)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    def print_summary(self, console: Console) -> None:
        """Print a rich summary table of all results."""
        console.print("\n")
        console.rule("[bold]Pipeline Summary")
        console.print()

        # --- Counts ---
        console.print(f"  Total:       {self.total}")
        console.print(f"  [green]Succeeded:[/]   {self.count('success')}")
        console.print(f"  [red]Failed:[/]      {self.count('failed')}")
        console.print(f"  [red]Errors:[/]      {self.count('error')}")
        console.print(f"  [yellow]Incomplete:[/]  {self.count('incomplete')}")
        console.print()

        # --- Per-pipeline table ---
        table = Table(title="Results by Pipeline", show_lines=True)
        table.add_column("#", style="dim", width=4)
        table.add_column("Session", min_width=20)
        table.add_column("Docs", width=5)
        table.add_column("Status", width=10)
        table.add_column("Stage", min_width=18)
        table.add_column("Progress", width=9)
        table.add_column("Outcome", min_width=14)
        table.add_column("Polls", width=6)

        for i, r in enumerate(self.results, 1):
            status_str = {
                "success": "[green]OK[/]",
                "failed": "[red]FAIL[/]",
                "error": "[red]ERR[/]",
                "incomplete": "[yellow]INC[/]",
            }.get(r.status, r.status)
            table.add_row(
                str(i),
                r.session_id,
                str(r.documents),
                status_str,
                r.final_stage or "-",
                f"{r.overall_progress:.1f}%",
                r.document_outcome or "-",
                str(r.polls),
            )

        console.print(table)

        # --- Failed details ---
        failed = [r for r in self.results if r.status in ("failed", "error")]
        if failed:
            console.print()
            console.rule("[red]Failed Pipelines")
            for r in failed:
                console.print(f"  {r.session_id}: {r.error}")

        console.print()


# ---------------------------------------------------------------------------
# CLI + async main
# ---------------------------------------------------------------------------

def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="API client integration test for the proposal pipeline server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--base-url",
        default="http://localhost:8080",
        help="Server base URL (default: http://localhost:8080)",
    )
    parser.add_argument(
        "-n", "--pipelines",
        type=int, default=3,
        help="Number of pipelines to run (default: 3)",
    )
    parser.add_argument(
        "--max-documents",
        type=int, default=6,
        help="Upper bound on documents per pipeline (default: 6)",
    )
    parser.add_argument(
        "--restart",
        action="store_true",
        help="Restart every pipeline once right after creating it",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count", default=0,
        help="Increase verbosity (-v for status polls, -vv for full JSON)",
    )
    parser.add_argument(
        "--seed",
        type=int, default=None,
        help="RNG seed for reproducibility (default: current timestamp)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float, default=2.0,
        help="Seconds between status polls (default: 2)",
    )
    parser.add_argument(
        "--max-wait",
        type=float, default=300.0,
        help="Safety limit: seconds to wait for each pipeline (default: 300)",
    )
    parser.add_argument(
        "--timeout",
        type=float, default=30.0,
        help="HTTP request timeout in seconds (default: 30)",
    )
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    console = Console()

    # --- Seed ---
    seed = args.seed if args.seed is not None else int(time.time())
    rng = random.Random(seed)
    console.print(f"[dim]RNG seed: {seed}[/]")
    console.print(f"[bold]Running {args.pipelines} pipelines against {args.base_url}[/]")

    printer = RichPrinter(verbosity=args.verbose)
    collector = ResultCollector()

    async with APIClient(args.base_url, timeout=args.timeout) as client:
        healthy = await client.health_check()
        if not healthy:
            console.print(
                f"[red]Server at {args.base_url} is not reachable. "
                f"Is the server running?[/]"
            )
            sys.exit(1)

        runner = PipelineRunner(
            client, printer, rng,
            restart=args.restart,
            poll_interval=args.poll_interval,
            max_wait=args.max_wait,
        )
        for i in range(1, args.pipelines + 1):
            session_id = f"client-test-{uuid.uuid4().hex[:8]}"
            documents = rng.randint(1, args.max_documents)
            printer.pipeline_header(i, args.pipelines, session_id, documents)
            try:
                result = await runner.run(session_id, documents)
            except httpx.HTTPError as exc:
                printer.error(f"{type(exc).__name__}: {exc}")
                result = PipelineResult(
                    session_id=session_id, documents=documents,
                    status="error", error=str(exc),
                )
            collector.add(result)

    collector.print_summary(console)
    if collector.count("error") or collector.count("incomplete"):
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
