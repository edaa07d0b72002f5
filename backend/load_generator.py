"""
Callback Replay Generator for Dealership Subscription Payments
Fires identical settlement callbacks concurrently against a deployment

The gateway may deliver the same callback several times, possibly at
once. Point this at a real, gateway-confirmed session and check that
at most one delivery reports "success" and the rest "already_processed".
"""
import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import aiohttp


@dataclass
class ReplayResult:
    """Results from a replay run"""
    total_requests: int
    outcomes: Dict[str, int] = field(default_factory=dict)
    http_statuses: Dict[int, int] = field(default_factory=dict)
    transport_errors: int = 0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0

    @property
    def no_double_settlement(self) -> bool:
        return self.outcomes.get("success", 0) <= 1 and self.transport_errors == 0

    def __str__(self):
        lines = [
            "",
            "╔════════════════════════════════════════════╗",
            "║         CALLBACK REPLAY RESULTS            ║",
            "╠════════════════════════════════════════════╣",
            f"║ Total Requests:        {self.total_requests:>8}            ║",
            f"║ Transport Errors:      {self.transport_errors:>8}            ║",
        ]
        for outcome, count in sorted(self.outcomes.items()):
            lines.append(f"║ {outcome + ':':<22} {count:>8}            ║")
        for status, count in sorted(self.http_statuses.items()):
            lines.append(f"║ HTTP {status}:{'':<14} {count:>8}            ║")
        lines += [
            "╠════════════════════════════════════════════╣",
            f"║ P50 Latency:           {self.p50_latency_ms:>7.1f}ms          ║",
            f"║ P95 Latency:           {self.p95_latency_ms:>7.1f}ms          ║",
            f"║ Double Settled:        {'no' if self.no_double_settlement else 'YES':>8}            ║",
            "╚════════════════════════════════════════════╝",
        ]
        return "\n".join(lines)


def summarize(results: List[dict]) -> ReplayResult:
    """Fold individual replay responses into a ReplayResult"""
    outcomes = Counter(r["outcome"] for r in results if r.get("outcome"))
    statuses = Counter(r["http_status"] for r in results if r.get("http_status") is not None)
    latencies = sorted(r["latency_ms"] for r in results)

    return ReplayResult(
        total_requests=len(results),
        outcomes=dict(outcomes),
        http_statuses=dict(statuses),
        transport_errors=sum(1 for r in results if r.get("http_status") is None),
        p50_latency_ms=latencies[int(len(latencies) * 0.5)] if latencies else 0,
        p95_latency_ms=latencies[int(len(latencies) * 0.95)] if latencies else 0,
    )


async def send_callback(session: aiohttp.ClientSession, callback_url: str) -> dict:
    """Deliver one callback and record what came back"""
    start_time = time.time()
    try:
        async with session.get(
            callback_url,
            timeout=aiohttp.ClientTimeout(total=30)
        ) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = {}
            return {
                "http_status": response.status,
                "outcome": body.get("status") if isinstance(body, dict) else None,
                "latency_ms": (time.time() - start_time) * 1000,
            }
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        return {
            "http_status": None,
            "outcome": None,
            "latency_ms": (time.time() - start_time) * 1000,
            "error": str(e),
        }


async def run_replay(callback_url: str, concurrency: int = 50) -> ReplayResult:
    """
    Deliver the same callback URL `concurrency` times at once.

    Args:
        callback_url: full signed callback URL as given to the gateway
        concurrency: number of simultaneous deliveries
    """
    print(f"\n🚀 Replaying callback {concurrency}x concurrently")
    async with aiohttp.ClientSession() as session:
        tasks = [send_callback(session, callback_url) for _ in range(concurrency)]
        results = await asyncio.gather(*tasks)
    return summarize(list(results))


async def main(argv: Optional[List[str]] = None):
    import argparse

    parser = argparse.ArgumentParser(description="Settlement callback replay")
    parser.add_argument("callback_url", help="Signed callback URL to replay")
    parser.add_argument("--concurrency", type=int, default=50, help="Concurrent deliveries")

    args = parser.parse_args(argv)
    result = await run_replay(args.callback_url, concurrency=args.concurrency)
    print(result)


if __name__ == "__main__":
    asyncio.run(main())
