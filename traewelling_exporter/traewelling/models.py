from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from traewelling_exporter.aggregation.models import CheckIn


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TrainStopover(_ApiModel):
    id: Optional[int] = None
    name: str = ""
    is_arrival_delayed: bool = Field(False, alias="isArrivalDelayed")
    is_departure_delayed: bool = Field(False, alias="isDepartureDelayed")
    cancelled: bool = False


class Train(_ApiModel):
    trip: Optional[int] = None
    hafas_id: Optional[str] = Field(None, alias="hafasId")
    category: str = "unknown"
    number: str = ""
    line_name: str = Field("unknown", alias="lineName")
    distance: float = Field(0, ge=0)
    points: int = Field(0, ge=0)
    duration: float = Field(0, ge=0)
    speed: float = 0.0
    origin: TrainStopover
    destination: TrainStopover


class Event(_ApiModel):
    id: int
    name: str


class Status(_ApiModel):
    id: int = Field(..., ge=1)
    user: Optional[int] = None
    username: Optional[str] = None
    created_at: datetime = Field(..., alias="createdAt")
    train: Train
    event: Optional[Event] = None

    def to_checkin(self) -> CheckIn:
        train = self.train
        return CheckIn(
            id=self.id,
            created_at=self.created_at,
            trip=train.trip,
            category=train.category or "unknown",
            line_name=train.line_name or "unknown",
            number=train.number,
            origin=train.origin.name,
            destination=train.destination.name,
            distance_meters=train.distance,
            duration_minutes=train.duration,
            points=train.points,
            speed_kmh=train.speed,
            arrival_delayed=train.destination.is_arrival_delayed,
            departure_delayed=train.origin.is_departure_delayed,
            cancelled=train.origin.cancelled or train.destination.cancelled,
            event_name=self.event.name if self.event else None,
        )


class PageLinks(_ApiModel):
    next: Optional[str] = None


class StatusPage(_ApiModel):
    data: List[Any] = Field(default_factory=list)
    links: PageLinks = Field(default_factory=PageLinks)


def parse_status(raw: Any) -> CheckIn:
    """Decode one status; malformed records come back flagged, never raised."""
    try:
        return Status.model_validate(raw).to_checkin()
    except ValidationError as e:
        raw_id = raw.get("id") if isinstance(raw, dict) else None
        return CheckIn.malformed(raw_id, f"undecodable status: {e.error_count()} error(s)")
