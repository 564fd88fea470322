import importlib.util
from pathlib import Path

import httpx
import pytest

from outreach_queue.generator import TemplateGenerator
from outreach_queue.trigger import CRON_PATH, HttpTrigger, LocalTrigger, run_forever, tick

def test_local_trigger_runs_a_cycle(make_processor, seed_job):
    seed_job(3)
    trigger = LocalTrigger(make_processor(TemplateGenerator()), batch_size=2, max_attempts=3)
    result = trigger.invoke()
    assert result.records_processed == 2
    assert result.jobs_processed == 1

def _http_trigger(handler):
    client = httpx.Client(base_url="http://api", transport=httpx.MockTransport(handler))
    return HttpTrigger("http://api", "s3cret", client=client)

def test_http_trigger_sends_secret_and_parses_result():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["secret"] = request.headers.get("X-Cron-Secret")
        return httpx.Response(
            200,
            json={
                "success": True,
                "jobsProcessed": 2,
                "recordsProcessed": 5,
                "recordsFailed": 1,
                "timestamp": "2026-01-01T00:00:00+00:00",
            },
        )

    result = _http_trigger(handler).invoke()
    assert seen == {"path": CRON_PATH, "secret": "s3cret"}
    assert (result.jobs_processed, result.records_processed, result.records_failed) == (2, 5, 1)

def test_tick_survives_server_errors():
    trigger = _http_trigger(lambda request: httpx.Response(500, json={"error": "Internal server error"}))
    assert tick(trigger) is None

def test_tick_survives_unreachable_api():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert tick(_http_trigger(handler)) is None

class Stop(Exception):
    pass

def test_run_forever_ticks_until_interrupted():
    calls = []

    class Counting:
        def invoke(self):
            calls.append(1)
            raise RuntimeError("store down")

    def sleep(seconds):
        if len(calls) >= 3:
            raise Stop

    with pytest.raises(Stop):
        run_forever(Counting(), interval_seconds=0.01, sleep=sleep)
    assert len(calls) == 3

def test_worker_builds_http_trigger_from_settings():
    path = Path(__file__).resolve().parents[1] / "worker" / "worker.py"
    spec = importlib.util.spec_from_file_location("outreach_worker", path)
    worker = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(worker)

    trigger = worker.build_trigger()
    assert isinstance(trigger, HttpTrigger)
    assert trigger.secret == "test-cron-secret"
