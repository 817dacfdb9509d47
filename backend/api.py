"""
Zonewatch API Endpoints
"""

from fastapi import APIRouter, HTTPException
from loguru import logger
from pydantic import AliasChoices, BaseModel, Field

from core.zonewatch.exceptions import ChannelError, MalformedTelemetryError, UnknownZoneError
from core.zonewatch.models import TelemetryEvent
from core.zonewatch.service import ZonewatchService

router = APIRouter()

# Zonewatch service (set by app.py during startup)
service: ZonewatchService | None = None


class SampleBody(BaseModel):
    """Temperature/humidity pair reported by a device."""
    temperature: float
    humidity: float = 0.0


class TelemetryRequest(BaseModel):
    """Request body for a telemetry report.

    Accepts both the device wire names (id, type, temperature) and the
    canonical names (deviceId, faultType, sample).
    """
    device_id: str = Field(validation_alias=AliasChoices("deviceId", "id"))
    zone: int
    section: int
    invalid: bool = False
    fault_type: str | None = Field(None, validation_alias=AliasChoices("faultType", "type"))
    sample: SampleBody = Field(validation_alias=AliasChoices("sample", "temperature"))


def _service() -> ZonewatchService:
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


@router.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": "Zonewatch",
        "version": "0.1.0",
        "running": service is not None and service.running,
    }


@router.get("/register")
@router.post("/register")
async def register_device():
    """Assign the next section to a new device."""
    assignment = _service().allocator.register()
    return assignment.to_dict()


@router.post("/data", status_code=202)
async def report_data(request: TelemetryRequest):
    """Accept a telemetry report: refresh the device's liveness and queue it for correlation."""
    svc = _service()

    try:
        event = TelemetryEvent.from_payload(
            {
                "deviceId": request.device_id,
                "zone": request.zone,
                "section": request.section,
                "invalid": request.invalid,
                "faultType": request.fault_type,
                "sample": request.sample.model_dump(),
            }
        )
    except MalformedTelemetryError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    try:
        svc.allocator.touch(event.device_id, event.zone_id, event.section_id)
    except UnknownZoneError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    try:
        message = await svc.channel.publish(svc.settings.channel.inbound_topic, event.to_payload())
    except ChannelError as e:
        logger.error(f"Failed to queue telemetry from {event.device_id}: {e}")
        raise HTTPException(status_code=503, detail=str(e)) from e

    logger.debug(
        f"Data from device: {event.device_id} | invalid: {event.invalid} | "
        f"temp: {event.sample.temperature} | humidity: {event.sample.humidity}"
    )
    return {"status": "queued", "message_id": message.id}


@router.get("/api/status")
async def get_status():
    """Get system status and pipeline counters."""
    return _service().status()


@router.get("/api/zones")
async def get_zones():
    """Get all configured zones with their live device counts."""
    svc = _service()
    return {
        "zones": [
            {
                **zone.to_dict(),
                "amount": svc.allocator.amount(zone.id),
                "baseline": svc.history.zone_baseline(zone.id),
            }
            for zone in svc.zones
        ]
    }


@router.get("/api/zones/{zone_id}/allocations")
async def get_zone_allocations(zone_id: int):
    """Get the live allocations of a zone."""
    svc = _service()
    try:
        allocations = svc.allocator.allocations(zone_id)
    except UnknownZoneError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    return {
        "zone_id": zone_id,
        "count": len(allocations),
        "allocations": [
            {
                "deviceId": a.device_id,
                "section": a.section_id,
                "lastSeen": a.last_seen.isoformat(),
            }
            for a in allocations
        ],
    }


@router.get("/api/sections/{section_id}/history")
async def get_section_history(section_id: int):
    """Get the accepted sample history of a section."""
    svc = _service()
    if not 1 <= section_id <= svc.zones.max_section:
        raise HTTPException(status_code=404, detail=f"Section not found: {section_id}")

    history = svc.history.snapshot(section_id)[section_id]
    return {
        "section_id": section_id,
        "zone_id": svc.zones.zone_for_section(section_id).id,
        "count": len(history),
        "mean": svc.history.section_mean(section_id),
        "history": history,
    }
