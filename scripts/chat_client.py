#!/usr/bin/env python3
from __future__ import annotations

import asyncio
import json
import random
import sys
import time
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

import httpx
import typer

app = typer.Typer(help="Command-line client and load generator for the chat relay")

PROMPTS = [
    "Explain what a reverse proxy does in two sentences.",
    "List three ways to reduce latency when streaming LLM output.",
    "Draft a short release note for a chat relay service.",
    "Summarize the difference between server-sent events and websockets.",
    "Give three names for a coffee shop run by robots.",
]


@dataclass
class Stats:
    success: int = 0
    throttled: int = 0
    failed: int = 0
    chunks: int = 0
    total_latency: float = 0.0
    total_first_chunk: float = 0.0
    status_counts: dict = field(default_factory=dict)

    def record(self, status_code: int, latency: float, first_chunk: float | None, chunks: int) -> None:
        self.status_counts[status_code] = self.status_counts.get(status_code, 0) + 1
        if status_code == 200:
            self.success += 1
            self.total_latency += latency
            self.chunks += chunks
            if first_chunk is not None:
                self.total_first_chunk += first_chunk
        elif status_code == 429:
            self.throttled += 1
        else:
            self.failed += 1


def make_payload(model: Optional[str], stream: bool, prompt: Optional[str] = None) -> dict:
    payload = {
        "messages": [
            {"role": "system", "content": "You are a concise assistant."},
            {"role": "user", "content": prompt or random.choice(PROMPTS)},
        ],
        "max_tokens": random.randint(32, 256),
        "temperature": round(random.uniform(0.2, 1.0), 2),
        "stream": stream,
    }
    if model:
        payload["model"] = model
    return payload


def iter_deltas(lines: Iterator[str]) -> Iterator[str]:
    """Yield delta text from ``data:`` records until the ``[DONE]`` sentinel."""
    for line in lines:
        if not line.startswith("data: "):
            continue
        data = line[len("data: "):].strip()
        if data == "[DONE]":
            return
        chunk = json.loads(data)
        choice = (chunk.get("choices") or [{}])[0]
        content = (choice.get("delta") or {}).get("content")
        if content:
            yield content
        if choice.get("finish_reason") == "error":
            raise RuntimeError(content or "stream ended with an error")


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="User message to send"),
    url: str = typer.Option("http://localhost:3000", help="Base URL of the relay"),
    model: Optional[str] = typer.Option(None, help="Model alias or full upstream id"),
    stream: bool = typer.Option(True, help="Request a streamed answer"),
) -> None:
    endpoint = url.rstrip("/") + "/v1/chat/completions"
    payload = make_payload(model, stream, prompt)
    with httpx.Client(timeout=None) as client:
        if not stream:
            resp = client.post(endpoint, json=payload)
            print(json.dumps(resp.json(), indent=2))
            raise typer.Exit(code=0 if resp.is_success else 1)
        with client.stream("POST", endpoint, json=payload) as resp:
            if not resp.is_success:
                resp.read()
                print(resp.text, file=sys.stderr)
                raise typer.Exit(code=1)
            try:
                for delta in iter_deltas(resp.iter_lines()):
                    print(delta, end="", flush=True)
            except RuntimeError as exc:
                print(f"\n{exc}", file=sys.stderr)
                raise typer.Exit(code=1)
            print()


async def worker(
    client: httpx.AsyncClient,
    endpoint: str,
    model: Optional[str],
    stream: bool,
    end_time: float,
    stats: Stats,
    lock: asyncio.Lock,
) -> None:
    local = Stats()
    while time.time() < end_time:
        start = time.perf_counter()
        first_chunk = None
        chunks = 0
        try:
            async with client.stream("POST", endpoint, json=make_payload(model, stream)) as resp:
                status_code = resp.status_code
                async for line in resp.aiter_lines():
                    if line.startswith("data: "):
                        if first_chunk is None:
                            first_chunk = time.perf_counter() - start
                        chunks += 1
        except httpx.HTTPError:
            status_code = -1
        local.record(status_code, time.perf_counter() - start, first_chunk, chunks)
    async with lock:
        stats.success += local.success
        stats.throttled += local.throttled
        stats.failed += local.failed
        stats.chunks += local.chunks
        stats.total_latency += local.total_latency
        stats.total_first_chunk += local.total_first_chunk
        for code, count in local.status_counts.items():
            stats.status_counts[code] = stats.status_counts.get(code, 0) + count


@app.command()
def load(
    url: str = typer.Option("http://localhost:3000", help="Base URL of the relay"),
    model: Optional[str] = typer.Option(None, help="Model alias or full upstream id"),
    stream: bool = typer.Option(True, help="Request streamed answers"),
    duration: int = typer.Option(20, help="Test duration in seconds"),
    concurrency: int = typer.Option(10, help="Number of concurrent workers"),
    max_connections: int = typer.Option(200, help="HTTP connection pool size"),
) -> None:
    endpoint = url.rstrip("/") + "/v1/chat/completions"

    async def _run() -> Stats:
        limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections)
        async with httpx.AsyncClient(limits=limits, timeout=None) as client:
            stats = Stats()
            lock = asyncio.Lock()
            end_time = time.time() + duration
            tasks: List[asyncio.Task] = [
                asyncio.create_task(worker(client, endpoint, model, stream, end_time, stats, lock))
                for _ in range(concurrency)
            ]
            await asyncio.gather(*tasks)
            return stats

    try:
        stats = asyncio.run(_run())
    except KeyboardInterrupt:
        print("Interrupted, shutting down load generator...", file=sys.stderr)
        raise typer.Exit(code=130)

    total = stats.success + stats.throttled + stats.failed
    avg_latency = stats.total_latency / stats.success if stats.success else 0.0
    avg_first = stats.total_first_chunk / stats.success if stats.success else 0.0
    print(json.dumps(
        {
            "total_requests": total,
            "success": stats.success,
            "throttled": stats.throttled,
            "failed": stats.failed,
            "chunks_received": stats.chunks,
            "success_avg_latency_ms": round(avg_latency * 1000, 2),
            "success_avg_first_chunk_ms": round(avg_first * 1000, 2),
            "status_counts": {str(code): count for code, count in stats.status_counts.items()},
        },
        indent=2,
    ))


if __name__ == "__main__":
    app()
