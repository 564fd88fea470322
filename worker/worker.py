import logging

from outreach_queue.logging_utils import setup_logging
from outreach_queue.settings import settings
from outreach_queue.trigger import HttpTrigger, run_forever

setup_logging(settings.log_level)
log = logging.getLogger("worker")

def build_trigger() -> HttpTrigger:
    # the API call may legitimately run up to the cycle deadline
    return HttpTrigger(
        settings.trigger_url,
        settings.cron_secret,
        timeout=settings.cycle_deadline_seconds + 30,
    )

def main():
    log.info(f"worker started, calling {settings.trigger_url}", extra={"event": "worker_start"})
    run_forever(build_trigger(), settings.trigger_interval_seconds)

if __name__ == "__main__":
    main()
