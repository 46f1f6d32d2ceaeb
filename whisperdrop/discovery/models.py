"""Pydantic models for peer discovery."""

import ipaddress
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class DeviceStatus(str, Enum):
    ONLINE = "online"
    UNREACHABLE = "unreachable"


class Device(BaseModel):
    """A peer observed on the LAN."""
    id: str
    name: str
    ip: str
    api_port: int  # TCP port answered by the peer's service, used for probing
    status: DeviceStatus = DeviceStatus.ONLINE
    last_seen_at: datetime
    latency_ms: int | None = Field(default=None, ge=0)

    @field_validator("ip")
    @classmethod
    def _ipv4(cls, value: str) -> str:
        return str(ipaddress.IPv4Address(value))

    @property
    def is_transfer_target(self) -> bool:
        return self.status == DeviceStatus.ONLINE and self.latency_ms is not None


class ProbeResult(BaseModel):
    device_id: str
    reachable: bool
    latency_ms: int | None = Field(default=None, ge=0)


class BeaconKind(str, Enum):
    ANNOUNCE = "announce"
    QUERY = "query"  # asks every listener to announce itself right away


class DiscoveryBeacon(BaseModel):
    """The JSON payload broadcast over UDP."""
    app_id: str
    kind: BeaconKind = BeaconKind.ANNOUNCE
    device_id: str
    device_name: str
    api_port: int
    platform: str
