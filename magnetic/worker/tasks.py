"""ARQ job definitions."""

import uuid
from datetime import date, datetime
from typing import Any, Awaitable

from arq.connections import RedisSettings

from magnetic.core.config import get_settings
from magnetic.core.logging import configure_logging, get_logger
from magnetic.db.init import init_db
from magnetic.models.failed_job import FailedJob
from magnetic.worker.cron import run_recheck_user_plans, run_renew_credits

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    kwargs: dict[str, Any],
    coro: Awaitable[Any],
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            kwargs=kwargs,
            error_type=type(e).__name__,
            reason=str(e)[:2000],
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


def _job_id(ctx: dict[str, Any]) -> str | None:
    return ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None


async def renew_credits(ctx: dict[str, Any]) -> dict[str, Any]:
    """Cron job: daily renewal sweep."""
    log.info("job_start", job="renew_credits")
    result = await _run_with_dlq("renew_credits", _job_id(ctx), {}, run_renew_credits())
    log.info("job_done", job="renew_credits", errors=result.get("errors"))
    return result


async def recheck_user_plans(ctx: dict[str, Any]) -> dict[str, Any]:
    """CRM tag reconciliation; also enqueueable on demand."""
    log.info("job_start", job="recheck_user_plans")
    result = await _run_with_dlq("recheck_user_plans", _job_id(ctx), {}, run_recheck_user_plans())
    log.info("job_done", job="recheck_user_plans", checked=result.get("checked"), errors=result.get("errors"))
    return result


def is_recheck_day(day: date) -> bool:
    """Alternate days by absolute day count, so month ends never run twice in a row."""
    return day.toordinal() % 2 == 0


async def scheduled_recheck_user_plans(ctx: dict[str, Any]) -> dict[str, Any] | None:
    """Daily cron entry point; the recheck itself runs every other day."""
    today = datetime.utcnow().date()
    if not is_recheck_day(today):
        log.info("job_skipped", job="recheck_user_plans", day=today.isoformat())
        return None
    return await recheck_user_plans(ctx)


async def startup(ctx: dict) -> None:
    configure_logging(debug=get_settings().debug, service="magnetic-worker")
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
