import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.api.database import get_db
from backend.src.config import settings
from backend.src.contracts.models import CycleStatus, ProductRunResult
from backend.src.scheduler.scheduler import PriceWatchScheduler

limiter = Limiter(key_func=get_remote_address)

router = APIRouter()


# ── Request / Response schemas ────────────────────────────────────────────────


class TriggerRequest(BaseModel):
    product_slug: str | None = None
    run_all: bool = False


class HealthResponse(BaseModel):
    status: str
    db: str


# ── Dependencies ──────────────────────────────────────────────────────────────


async def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    if x_admin_key is None or not secrets.compare_digest(
        x_admin_key, settings.admin_api_key
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )


def get_scheduler(request: Request) -> PriceWatchScheduler:
    scheduler: PriceWatchScheduler | None = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler not running",
        )
    return scheduler


# ── Scraping routes ───────────────────────────────────────────────────────────


@router.post("/api/scraping/trigger", dependencies=[Depends(require_admin)])
@limiter.limit("10/minute")
async def trigger_scraping(
    request: Request,
    body: TriggerRequest,
    scheduler: PriceWatchScheduler = Depends(get_scheduler),
) -> ProductRunResult:
    if scheduler.is_running:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Scraping is already in progress",
        )

    if body.product_slug:
        if scheduler.is_product_busy(body.product_slug):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"{body.product_slug} is already being scraped",
            )
        return await scheduler.trigger_product(body.product_slug)

    if body.run_all:
        result = scheduler.trigger_full_cycle()
        if result.already_running:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Scraping is already in progress",
            )
        return ProductRunResult(success=True, message="Scraping started for all products")

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="Provide product_slug or set run_all",
    )


@router.get("/api/scraping/status", dependencies=[Depends(require_admin)])
async def scraping_status(
    scheduler: PriceWatchScheduler = Depends(get_scheduler),
) -> CycleStatus:
    return scheduler.cycle_status()


# ── Health ────────────────────────────────────────────────────────────────────


@router.get("/health")
async def health_check(
    session: AsyncSession = Depends(get_db),
) -> HealthResponse:
    db_status = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        db_status = "error"

    return HealthResponse(status="ok" if db_status == "ok" else "degraded", db=db_status)
