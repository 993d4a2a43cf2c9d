"""Quota usage API endpoints"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lab_platform.api.dependencies import get_session
from lab_platform.schemas.quota import Requester
from lab_platform.services.quota_ledger import QuotaLedger

router = APIRouter(prefix="/quotas", tags=["Quotas"])


@router.get("/{user_id}/usage")
async def get_quota_usage(
    user_id: int = Path(..., ge=1),
    team_id: Optional[int] = Query(None, ge=1, description="Team whose quota applies when the user has none"),
    db: AsyncSession = Depends(get_session)
) -> Dict[str, Any]:
    """Current-period usage against the applicable quota"""
    usage = await QuotaLedger(db).get_usage(Requester(user_id=user_id, team_id=team_id))
    return usage.to_dict()
