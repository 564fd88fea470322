import logging
import time
from typing import Callable, Protocol

import httpx

from .processor import BatchProcessor
from .schemas import CycleResult

log = logging.getLogger("trigger")

CRON_PATH = "/internal/cron/process"

class Trigger(Protocol):
    def invoke(self) -> CycleResult: ...

class LocalTrigger:
    """Runs a cycle in-process."""

    def __init__(self, processor: BatchProcessor, batch_size: int, max_attempts: int):
        self.processor = processor
        self.batch_size = batch_size
        self.max_attempts = max_attempts

    def invoke(self) -> CycleResult:
        return self.processor.run_cycle(self.batch_size, self.max_attempts)

class HttpTrigger:
    """Calls the cron endpoint of a running API with the shared secret."""

    def __init__(self, base_url: str, secret: str, timeout: float = 300.0, client: httpx.Client | None = None):
        self.secret = secret
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def invoke(self) -> CycleResult:
        r = self.client.post(CRON_PATH, headers={"X-Cron-Secret": self.secret})
        r.raise_for_status()
        body = r.json()
        return CycleResult(
            jobs_processed=body["jobsProcessed"],
            records_processed=body["recordsProcessed"],
            records_failed=body.get("recordsFailed", 0),
            timestamp=body["timestamp"],
        )

def tick(trigger: Trigger) -> CycleResult | None:
    """Fire one cycle. Failures are logged and left for the next tick."""
    try:
        result = trigger.invoke()
    except httpx.HTTPStatusError as e:
        log.error(
            f"cycle failed with status {e.response.status_code}: {e.response.text[:200]}",
            extra={"event": "trigger_failed"},
        )
        return None
    except Exception:
        log.error("cycle failed", extra={"event": "trigger_failed"}, exc_info=True)
        return None

    if result.records_processed > 0:
        log.info(
            f"processed {result.records_processed} records from {result.jobs_processed} jobs",
            extra={"event": "trigger_success"},
        )
    else:
        log.info("no pending records to process", extra={"event": "trigger_idle"})
    return result

def run_forever(trigger: Trigger, interval_seconds: float, sleep: Callable[[float], None] = time.sleep) -> None:
    log.info(f"trigger started, every {interval_seconds}s", extra={"event": "trigger_start"})
    while True:
        started = time.monotonic()
        tick(trigger)
        sleep(max(0.0, interval_seconds - (time.monotonic() - started)))
