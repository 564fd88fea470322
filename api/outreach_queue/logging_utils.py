import json
import logging
import threading
import time

EXTRA_FIELDS = ("request_id", "cycle_id", "job_id", "record_id", "event", "status_code", "duration_ms")

# chatty per-request loggers; the trigger fires every few seconds
QUIET_LOGGERS = ("httpx", "httpcore", "openai")

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        # cycle workers and generator calls log from their own threads
        if record.threadName != threading.main_thread().name:
            base["thread"] = record.threadName
        for k in EXTRA_FIELDS:
            value = getattr(record, k, None)
            if value is not None:
                base[k] = value
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)

def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
