import hmac
import logging

from fastapi import Header, HTTPException, Query, Request

from .settings import settings

log = logging.getLogger("api")

def require_trigger_secret(
    request: Request,
    x_cron_secret: str | None = Header(default=None),
    secret: str | None = Query(default=None),
) -> None:
    """Reject trigger calls whose shared secret does not match, before anything touches the stores."""
    provided = x_cron_secret or secret or ""
    if not hmac.compare_digest(provided.encode("utf-8"), settings.cron_secret.encode("utf-8")):
        log.warning(
            "trigger rejected",
            extra={"request_id": getattr(request.state, "request_id", None), "event": "trigger_unauthorized"},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

def require_owner(x_owner_id: str | None = Header(default=None)) -> str:
    if not x_owner_id:
        raise HTTPException(status_code=401, detail="missing owner")
    return x_owner_id
