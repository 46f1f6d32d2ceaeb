"""REST API routes for WhisperDrop."""

import logging
import uuid
from datetime import timedelta

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from whisperdrop.config import (
    DEFAULT_BANDWIDTH_MBPS,
    DISCOVERY_TIMEOUT,
    MESSAGE_STORE_LIMIT,
    PROBE_TIMEOUT,
)
from whisperdrop.errors import InvalidInput, WhisperDropError
from whisperdrop.messaging.models import Message
from whisperdrop.messaging.scheduler import expiry_tier, utcnow
from whisperdrop.security import crypto
from whisperdrop.transfer.planner import plan

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_discovery_service = None
_scheduler = None
_messages: dict[str, Message] = {}  # insertion order, oldest first
_message_limit = MESSAGE_STORE_LIMIT


def init_routes(discovery_service, scheduler, message_limit: int = MESSAGE_STORE_LIMIT) -> None:
    """Inject service dependencies into the routes module."""
    global _discovery_service, _scheduler, _message_limit
    _discovery_service = discovery_service
    _scheduler = scheduler
    _message_limit = message_limit
    _messages.clear()
    scheduler.on_expire(_forget_message)


def _forget_message(message_id: str) -> None:
    _messages.pop(message_id, None)


def _store_message(message: Message) -> None:
    _messages.pop(message.id, None)
    _messages[message.id] = message
    while len(_messages) > _message_limit:
        oldest_id = next(iter(_messages))
        _messages.pop(oldest_id)
        _scheduler.unregister(oldest_id)
        logger.info(f"Message store full, evicted {oldest_id}")


def _http_error(err: WhisperDropError) -> HTTPException:
    return HTTPException(status_code=err.status, detail=err.to_dict())


def _parse_key(key_hex: str | None) -> bytes | None:
    if key_hex is None:
        return None
    try:
        key = bytes.fromhex(key_hex)
    except ValueError:
        raise InvalidInput("key must be hex encoded")
    if len(key) != crypto.KEY_SIZE:
        raise InvalidInput(f"key must be {crypto.KEY_SIZE} bytes")
    return key


# --- Device Discovery ---

class ScanBody(BaseModel):
    timeout: float = Field(default=DISCOVERY_TIMEOUT, gt=0, le=30)
    probe_timeout: float = Field(default=PROBE_TIMEOUT, gt=0, le=30)
    expected: int | None = Field(default=None, ge=1)


@router.get("/devices")
async def list_devices():
    """Return every known device; ``available`` lists valid transfer targets."""
    return {
        "devices": [d.model_dump(mode="json") for d in _discovery_service.get_devices()],
        "available": [d.id for d in _discovery_service.available_devices()],
    }


@router.post("/devices/scan")
async def scan_devices(body: ScanBody | None = None):
    """Discover peers and probe them; only reachable devices are returned."""
    body = body or ScanBody()
    devices = await _discovery_service.scan(
        timeout=body.timeout, probe_timeout=body.probe_timeout, expected=body.expected
    )
    return {"devices": [d.model_dump(mode="json") for d in devices]}


@router.post("/devices/{device_id}/probe")
async def probe_device(device_id: str, timeout: float = Query(PROBE_TIMEOUT, gt=0, le=30)):
    if _discovery_service.get_device(device_id) is None:
        raise HTTPException(status_code=404, detail="Device not found")
    result = await _discovery_service.probe(device_id, timeout)
    return result.model_dump()


@router.get("/local-address")
async def local_address():
    try:
        ip = await _discovery_service.resolve_local_address()
    except WhisperDropError as e:
        raise _http_error(e)
    return {"ip": ip}


# --- Transfers ---

@router.get("/transfers/plan")
async def transfer_plan(
    file_size: int = Query(..., description="File size in bytes"),
    bandwidth_mbps: float = Query(DEFAULT_BANDWIDTH_MBPS),
):
    try:
        return plan(file_size, bandwidth_mbps).model_dump()
    except WhisperDropError as e:
        raise _http_error(e)


# --- Keys ---

@router.post("/keys")
async def new_key():
    """Generate a fresh room/session key. It is not stored anywhere."""
    return {"key": crypto.generate_key().hex()}


# --- Messages ---

class CreateMessageBody(BaseModel):
    text: str
    id: str | None = None
    ttl_seconds: float | None = Field(default=None, ge=0)
    burn_after_reading: bool = False
    key: str | None = None  # hex; falls back to the default key


class DecryptBody(BaseModel):
    ciphertext: str
    key: str | None = None


def _message_view(message: Message) -> dict:
    view = message.model_dump(mode="json")
    remaining = _scheduler.remaining(message.id)
    state = _scheduler.state(message.id)
    view["state"] = state.value if state else None
    view["remaining_seconds"] = remaining
    view["tier"] = expiry_tier(remaining).value if remaining is not None else None
    return view


@router.post("/messages")
async def create_message(body: CreateMessageBody):
    """Encrypt a message and start its countdown if it is ephemeral."""
    try:
        ciphertext = crypto.encrypt(body.text, _parse_key(body.key))
    except WhisperDropError as e:
        raise _http_error(e)

    expires_at = None
    if body.ttl_seconds is not None:
        expires_at = utcnow() + timedelta(seconds=body.ttl_seconds)

    message = Message(
        id=body.id or str(uuid.uuid4()),
        ciphertext=ciphertext,
        expires_at=expires_at,
        burn_after_reading=body.burn_after_reading,
    )
    _store_message(message)
    _scheduler.register(message)
    return _message_view(message)


@router.post("/messages/decrypt")
async def decrypt_message(body: DecryptBody):
    try:
        return {"plaintext": crypto.decrypt(body.ciphertext, _parse_key(body.key))}
    except WhisperDropError as e:
        raise _http_error(e)


@router.get("/messages/{message_id}")
async def get_message(message_id: str):
    message = _messages.get(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found or expired")
    return _message_view(message)


@router.post("/messages/{message_id}/read")
async def read_message(message_id: str):
    """Mark a message as read; burn-after-reading messages expire immediately."""
    message = _messages.get(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found or expired")
    burned = await _scheduler.mark_read(message_id)
    return {"message": message.model_dump(mode="json"), "burned": burned}


@router.delete("/messages/{message_id}")
async def delete_message(message_id: str):
    _scheduler.unregister(message_id)
    if _messages.pop(message_id, None) is None:
        raise HTTPException(status_code=404, detail="Message not found or expired")
    return {"status": "deleted"}
