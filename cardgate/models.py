"""
Card and device records read by the verification engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

# Absorbs clock drift between the management system and edge readers.
VALIDITY_TOLERANCE = timedelta(seconds=60)

DEVICE_STATUS_ACTIVE = "active"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes or ISO-8601 strings; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"unsupported timestamp value: {value!r}")
    return as_utc(parsed)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Device:
    sn: str
    device_id: str = ""
    tenant_id: str = ""
    display_name: str = ""
    status: str = ""
    id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == DEVICE_STATUS_ACTIVE

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Device":
        return cls(
            sn=data.get("sn", ""),
            device_id=data.get("device_id", ""),
            tenant_id=data.get("tenant_id", ""),
            display_name=data.get("display_name", ""),
            status=data.get("status", ""),
            id=str(data.get("id") or data.get("_id") or ""),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "sn": self.sn,
            "device_id": self.device_id,
            "tenant_id": self.tenant_id,
            "display_name": self.display_name,
            "status": self.status,
            "created_at": _format_timestamp(self.created_at),
            "updated_at": _format_timestamp(self.updated_at),
        }


@dataclass
class Card:
    number: str
    effective_at: datetime
    invalid_at: datetime
    devices: list[str] = field(default_factory=list)
    organization_id: str = ""
    display_name: str = ""
    barcode_type: str = ""
    id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_valid(self, now: datetime) -> bool:
        """
        True while ``now`` is inside the validity window widened by the
        tolerance. A naive ``now`` is taken as UTC.
        """
        now = as_utc(now)
        return (
            now > self.effective_at - VALIDITY_TOLERANCE
            and now < self.invalid_at + VALIDITY_TOLERANCE
        )

    def is_not_yet_valid(self, now: datetime) -> bool:
        return as_utc(now) <= self.effective_at - VALIDITY_TOLERANCE

    def has_device(self, device: str) -> bool:
        """Exact, case-sensitive membership; an empty list authorizes nothing."""
        if not self.devices:
            return False
        return device in self.devices

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Card":
        effective_at = parse_timestamp(data.get("effective_at"))
        invalid_at = parse_timestamp(data.get("invalid_at"))
        if effective_at is None or invalid_at is None:
            raise ValueError("card record requires effective_at and invalid_at")
        return cls(
            number=data.get("number", ""),
            effective_at=effective_at,
            invalid_at=invalid_at,
            devices=list(data.get("devices") or []),
            organization_id=data.get("organization_id", ""),
            display_name=data.get("display_name", ""),
            barcode_type=data.get("barcode_type", ""),
            id=str(data.get("id") or data.get("_id") or ""),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "number": self.number,
            "organization_id": self.organization_id,
            "display_name": self.display_name,
            "devices": list(self.devices),
            "effective_at": _format_timestamp(self.effective_at),
            "invalid_at": _format_timestamp(self.invalid_at),
            "barcode_type": self.barcode_type,
            "created_at": _format_timestamp(self.created_at),
            "updated_at": _format_timestamp(self.updated_at),
        }
