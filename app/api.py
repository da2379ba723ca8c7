"""HTTP route definitions for sensor data and service health."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.schemas import (
    ApiResponse,
    DeviceSummary,
    GenerateSensorDataRequest,
    GenerateSensorDataResult,
    HealthStatus,
    PaginationMetadata,
    SensorDataCreate,
    SensorDataRecord,
    SensorStats,
)
from app.security import require
from models.records import Page, PageRequest, SortOrder
from services.auth import Capability, Principal
from services.broadcast import BroadcastHub, build_default_hub
from services.sensor_data import (
    SENSOR_SORT_FIELDS,
    SensorDataQuery,
    SensorDataService,
    build_default_sensor_service,
)

router = APIRouter()

read_access = require(Capability.read_sensor_data)
write_access = require(Capability.write_sensor_data)


def get_sensor_service() -> SensorDataService:
    return build_default_sensor_service()


def get_hub() -> BroadcastHub:
    return build_default_hub()


def page_metadata(page: Page) -> PaginationMetadata:
    return PaginationMetadata(
        total=page.total,
        page=page.page,
        limit=page.limit,
        total_pages=page.total_pages,
        has_next_page=page.has_next_page,
        next_page_token=page.next_page_token,
    )


@router.post(
    "/sensor-data",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[SensorDataRecord],
    summary="Create a sensor reading; alert fields are derived from thresholds.",
)
def create_sensor_data(
    payload: SensorDataCreate,
    principal: Principal = Depends(write_access),
    service: SensorDataService = Depends(get_sensor_service),
) -> ApiResponse[SensorDataRecord]:
    record = service.create_reading(payload, actor=principal.account_id)
    return ApiResponse(data=record, message="Sensor data created successfully.")


@router.post(
    "/sensor-data/generate",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[GenerateSensorDataResult],
    summary="Generate random readings for testing.",
)
def generate_sensor_data(
    payload: GenerateSensorDataRequest,
    principal: Principal = Depends(write_access),
    service: SensorDataService = Depends(get_sensor_service),
) -> ApiResponse[GenerateSensorDataResult]:
    created = service.generate_readings(payload, actor=principal.account_id)
    message = f"Successfully generated {len(created)} sensor data records."
    return ApiResponse(data=GenerateSensorDataResult(generated=len(created), message=message))


@router.get(
    "/sensor-data",
    response_model=ApiResponse[List[SensorDataRecord]],
    summary="List readings with filtering and offset or cursor pagination.",
)
def list_sensor_data(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    sort_by: str = Query("timestamp", alias="sortBy"),
    sort_order: SortOrder = Query(SortOrder.desc, alias="sortOrder"),
    next_page_token: Optional[str] = Query(None, alias="nextPageToken"),
    device_id: Optional[str] = Query(None, alias="deviceId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    alerts_only: bool = Query(False, alias="alertsOnly"),
    _: Principal = Depends(read_access),
    service: SensorDataService = Depends(get_sensor_service),
) -> ApiResponse[List[SensorDataRecord]]:
    if sort_by not in SENSOR_SORT_FIELDS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"sortBy must be one of: {', '.join(sorted(SENSOR_SORT_FIELDS))}.",
        )
    query = SensorDataQuery(
        device_id=device_id,
        start_date=start_date,
        end_date=end_date,
        alerts_only=alerts_only,
        page=PageRequest(
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
            next_page_token=next_page_token,
        ),
    )
    result = service.list_readings(query)
    return ApiResponse(data=result.items, metadata=page_metadata(result))


@router.get(
    "/sensor-data/latest",
    response_model=ApiResponse[List[SensorDataRecord]],
    summary="The ten most recent readings, optionally for one device.",
)
def latest_sensor_data(
    device_id: Optional[str] = Query(None, alias="deviceId"),
    _: Principal = Depends(read_access),
    service: SensorDataService = Depends(get_sensor_service),
) -> ApiResponse[List[SensorDataRecord]]:
    return ApiResponse(data=service.latest(device_id))


@router.get(
    "/sensor-data/stats",
    response_model=ApiResponse[SensorStats],
    summary="Aggregate statistics over the last N hours.",
)
def sensor_data_stats(
    device_id: Optional[str] = Query(None, alias="deviceId"),
    hours: float = Query(24, gt=0),
    _: Principal = Depends(read_access),
    service: SensorDataService = Depends(get_sensor_service),
) -> ApiResponse[SensorStats]:
    return ApiResponse(data=service.get_stats(device_id=device_id, hours=hours))


@router.get(
    "/sensor-data/devices",
    response_model=ApiResponse[List[str]],
    summary="Distinct device identifiers.",
)
def list_devices(
    _: Principal = Depends(read_access),
    service: SensorDataService = Depends(get_sensor_service),
) -> ApiResponse[List[str]]:
    return ApiResponse(data=service.list_devices())


@router.get(
    "/sensor-data/devices/summary",
    response_model=ApiResponse[List[DeviceSummary]],
    summary="Per-device reading and alert counts.",
)
def device_summaries(
    _: Principal = Depends(read_access),
    service: SensorDataService = Depends(get_sensor_service),
) -> ApiResponse[List[DeviceSummary]]:
    return ApiResponse(data=service.device_summaries())


@router.get(
    "/sensor-data/{record_id}",
    response_model=ApiResponse[SensorDataRecord],
    summary="Fetch one reading.",
)
def get_sensor_data(
    record_id: str,
    _: Principal = Depends(read_access),
    service: SensorDataService = Depends(get_sensor_service),
) -> ApiResponse[SensorDataRecord]:
    try:
        record = service.get_reading(record_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.args[0]) from exc
    return ApiResponse(data=record)


@router.delete(
    "/sensor-data/{record_id}",
    response_model=ApiResponse[Dict[str, str]],
    summary="Delete a reading; soft=true archives it instead.",
)
def delete_sensor_data(
    record_id: str,
    soft: bool = Query(False),
    principal: Principal = Depends(write_access),
    service: SensorDataService = Depends(get_sensor_service),
) -> ApiResponse[Dict[str, str]]:
    try:
        if soft:
            service.archive_reading(record_id, actor=principal.account_id)
        else:
            service.delete_reading(record_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.args[0]) from exc
    return ApiResponse(data={"id": record_id}, message="Sensor data deleted successfully.")


@router.get(
    "/health",
    response_model=ApiResponse[HealthStatus],
    summary="Health check endpoint.",
)
async def healthcheck(request: Request, hub: BroadcastHub = Depends(get_hub)) -> ApiResponse[HealthStatus]:
    bridge = getattr(request.app.state, "bridge", None)
    return ApiResponse(
        data=HealthStatus(
            mqtt_connected=bool(bridge and bridge.is_connected()),
            realtime_clients=hub.connected_count(),
        )
    )


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
