from typing import Annotated
from fastapi import APIRouter, Depends, Query

from parley.bootstrap import Container
from ..dependencies import get_container

router = APIRouter(prefix="/api/v1/costs", tags=["costs"])


@router.get("/report")
async def cost_report(
    container: Annotated[Container, Depends(get_container)],
    days: Annotated[int, Query(ge=1, le=90)] = 30
):
    """Spend over the last `days` days with projections"""
    return await container.usage_tracker.generate_report(days)


@router.get("/realtime")
async def realtime_costs(container: Annotated[Container, Depends(get_container)]):
    stats = await container.usage_tracker.get_realtime_stats()
    stats["hourly_budget"] = container.settings.budget.hourly_budget
    stats["daily_budget"] = container.settings.budget.daily_budget
    return stats
