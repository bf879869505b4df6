"""
Load harness for the Values API.
- Calls a relative path once, N times in a row, or N times in parallel.
- Times every call and the batch as a whole.
- Failed calls are counted, never retried; only the first error of each batch is logged.
- Two clients: TLS (SECURE_BASE_ADDRESS) and plaintext (HTTP_BASE_ADDRESS).
"""
import os
import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

import httpx

SECURE_BASE_ADDRESS = os.getenv("SECURE_BASE_ADDRESS", "https://localhost:44398")
HTTP_BASE_ADDRESS = os.getenv("HTTP_BASE_ADDRESS", "http://localhost:58526")
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "60.0"))
MAX_NUM_ERRORS_TO_REPORT = int(os.getenv("MAX_NUM_ERRORS_TO_REPORT", "1"))
VERIFY_TLS = os.getenv("VERIFY_TLS", "1") == "1"
# unbounded connection pool
POOL_LIMITS = httpx.Limits(max_connections=None, max_keepalive_connections=None)

FAST_RELATIVE_URI = "api/values"
SLOW_RELATIVE_URI = "api/values/slow"

logger = logging.getLogger("load_harness")

Operation = Callable[[], Awaitable]


class CallError(Exception):
    """A single API call failed: transport, HTTP status or response body."""


@dataclass(frozen=True)
class CallResult:
    elapsed: float
    successful: bool


@dataclass(frozen=True)
class CallResultSet:
    wall_clock: float
    call_results: Tuple[CallResult, ...]


@dataclass(frozen=True)
class CallSummary:
    wall_clock_ms: float
    num_calls: int
    num_failed: int
    average_call_ms: float

    def __str__(self) -> str:
        return (f"Time elapsed: {self.wall_clock_ms:.3f}ms. Called {self.num_calls}, "
                f"failed {self.num_failed}. Avg call time: {self.average_call_ms:.3f}ms")


class ErrorReporter:
    """Logs at most `limit` errors; later ones are only counted."""

    def __init__(self, limit: int = MAX_NUM_ERRORS_TO_REPORT):
        self.limit = limit
        self._num_errors = 0
        self._lock = asyncio.Lock()

    @property
    def num_errors(self) -> int:
        return self._num_errors

    async def report(self, exc: BaseException):
        async with self._lock:
            self._num_errors += 1
            if self._num_errors > self.limit:
                return
        logger.error(f"Call failed: {exc!r}", exc_info=exc)


async def call_api(client: httpx.AsyncClient, relative_uri: str) -> List[str]:
    try:
        resp = await client.get(relative_uri)
        resp.raise_for_status()
        body = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise CallError(f"GET {relative_uri} failed: {e}") from e
    if not isinstance(body, list) or not all(isinstance(v, str) for v in body):
        raise CallError(f"GET {relative_uri} returned {body!r}, expected a list of strings")
    return body


async def measure(operation: Operation, reporter: Optional[ErrorReporter] = None) -> CallResult:
    start = time.perf_counter()
    successful = False
    try:
        await operation()
        successful = True
    except CallError as e:
        if reporter is not None:
            await reporter.report(e)
    return CallResult(elapsed=time.perf_counter() - start, successful=successful)


async def run_in_a_row(operation: Operation, num_times: int,
                       reporter: Optional[ErrorReporter] = None) -> CallResultSet:
    start = time.perf_counter()
    results = []
    for _ in range(num_times):
        results.append(await measure(operation, reporter))
    return CallResultSet(wall_clock=time.perf_counter() - start, call_results=tuple(results))


async def run_in_parallel(operation: Operation, num_times: int,
                          reporter: Optional[ErrorReporter] = None) -> CallResultSet:
    start = time.perf_counter()
    tasks = [asyncio.create_task(measure(operation, reporter)) for _ in range(num_times)]
    try:
        # gather keeps issuance order whatever the completion order
        results = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return CallResultSet(wall_clock=time.perf_counter() - start, call_results=tuple(results))


def summarize(results: CallResultSet) -> CallSummary:
    call_results = results.call_results
    num_calls = len(call_results)
    total_elapsed = sum(r.elapsed for r in call_results)
    return CallSummary(
        wall_clock_ms=results.wall_clock * 1000,
        num_calls=num_calls,
        num_failed=sum(1 for r in call_results if not r.successful),
        average_call_ms=(total_elapsed / num_calls) * 1000 if num_calls else 0.0,
    )


def report_results(results: CallResultSet) -> CallSummary:
    summary = summarize(results)
    logger.info(str(summary))
    return summary


def failed_indices(results: CallResultSet) -> List[int]:
    return [i for i, r in enumerate(results.call_results) if not r.successful]


def assert_no_failed_calls(results: CallResultSet):
    failed = failed_indices(results)
    report_results(results)
    if failed:
        raise AssertionError(f"there should be no failed calls, but calls {failed} failed")


class ApiHarness:
    """Owns the TLS and plaintext clients; close it (or use `async with`) when done.

    `transport` replaces the network transport for both clients, e.g. an
    `httpx.ASGITransport` to drive the app in-process.
    """

    def __init__(self, secure_base_address: str = SECURE_BASE_ADDRESS,
                 http_base_address: str = HTTP_BASE_ADDRESS,
                 timeout: float = REQUEST_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 verify: bool = VERIFY_TLS,
                 max_errors_to_report: int = MAX_NUM_ERRORS_TO_REPORT):
        # pool waits are unbounded
        timeout = httpx.Timeout(timeout, pool=None)
        self.secure_client = httpx.AsyncClient(base_url=secure_base_address, timeout=timeout, limits=POOL_LIMITS,
                                               transport=transport, verify=verify)
        self.http_client = httpx.AsyncClient(base_url=http_base_address, timeout=timeout, limits=POOL_LIMITS,
                                             transport=transport)
        self.max_errors_to_report = max_errors_to_report

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    @property
    def is_closed(self) -> bool:
        return self.secure_client.is_closed and self.http_client.is_closed

    async def aclose(self):
        try:
            if not self.secure_client.is_closed:
                await self.secure_client.aclose()
        finally:
            if not self.http_client.is_closed:
                await self.http_client.aclose()

    def _new_reporter(self) -> ErrorReporter:
        # one error budget per batch
        return ErrorReporter(limit=self.max_errors_to_report)

    async def call_api(self, client: httpx.AsyncClient, relative_uri: str) -> List[str]:
        return await call_api(client, relative_uri)

    async def call_multiple_times_in_a_row(self, client: httpx.AsyncClient, relative_uri: str,
                                           num_times: int) -> CallResultSet:
        return await run_in_a_row(lambda: call_api(client, relative_uri), num_times, self._new_reporter())

    async def call_multiple_times_in_parallel(self, client: httpx.AsyncClient, relative_uri: str,
                                              num_times: int) -> CallResultSet:
        return await run_in_parallel(lambda: call_api(client, relative_uri), num_times, self._new_reporter())


async def run_all(num_times: int = 100):
    async with ApiHarness() as harness:
        logger.info(f"Fast once: {await harness.call_api(harness.secure_client, FAST_RELATIVE_URI)}")
        logger.info(f"Slow once: {await harness.call_api(harness.secure_client, SLOW_RELATIVE_URI)}")
        for name, client in (("https", harness.secure_client), ("http", harness.http_client)):
            logger.info(f"[{name}] fast x{num_times} in a row")
            report_results(await harness.call_multiple_times_in_a_row(client, FAST_RELATIVE_URI, num_times))
            logger.info(f"[{name}] fast x{num_times} in parallel")
            report_results(await harness.call_multiple_times_in_parallel(client, FAST_RELATIVE_URI, num_times))
        logger.info(f"[https] slow x{num_times} in parallel")
        report_results(await harness.call_multiple_times_in_parallel(harness.secure_client, SLOW_RELATIVE_URI, num_times))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    asyncio.run(run_all())
