"""
Fleet API Endpoints

All routes are prefixed with /api/fleet (configured in main.py).

Routes:
    - GET /api/fleet/status   -> Aggregated fleet summary

Data Aggregation:
    - Hashrate and power are summed across online devices
    - Temperature and power are averaged across online devices
    - Offline or unreachable devices are listed with their error
    - The call never fails because a device is unreachable
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from pyminerfleet.manager import FleetManager
from pyminerfleet.models import FleetFilter, FleetSummary
from pyminerfleet.server.deps import get_manager

router = APIRouter()


@router.get("/status", response_model=FleetSummary)
async def get_fleet_status(tag: List[str] = Query(default=[]), tenant_id: Optional[str] = None,
                           device_id: List[str] = Query(default=[]), force_refresh: bool = False,
                           manager: FleetManager = Depends(get_manager)):
    """
    Get the fleet summary, optionally filtered.

    Filters:
        - tag: repeatable, a device must carry every tag given
        - tenant_id: only devices owned by this tenant
        - device_id: repeatable, restrict to these devices
    """
    fleet_filter = FleetFilter(tags=tag, tenant_id=tenant_id, device_ids=device_id)
    return await manager.get_fleet_status(fleet_filter, force_refresh=force_refresh)
