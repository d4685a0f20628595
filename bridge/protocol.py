"""
Message framing for the simulator websocket.

Event messages look like ``42["telemetry",{...}]``: "4" marks a websocket
message and "2" an event. An absent payload (``42["telemetry",null]``) means
the simulator is in manual mode.
"""

import json
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from data.formats.data_format import Telemetry


EVENT_PREFIX = "42"
TELEMETRY_EVENT = "telemetry"
STEER_EVENT = "steer"
MANUAL_EVENT = "manual"
MANUAL_MESSAGE = '42["manual",{}]'


class MalformedTelemetryError(ValueError):
    """Telemetry payload is missing fields or has non-numeric values."""


class TelemetryMessage(BaseModel):
    """Telemetry event data from the simulator."""
    model_config = ConfigDict(allow_inf_nan=False)

    ptsx: List[float]
    ptsy: List[float]
    x: float
    y: float
    psi: float
    speed: float
    steering_angle: float = 0.0
    throttle: float = 0.0

    @model_validator(mode="after")
    def _check_waypoints(self):
        if len(self.ptsx) != len(self.ptsy):
            raise ValueError(
                f"ptsx/ptsy length mismatch: {len(self.ptsx)} vs {len(self.ptsy)}"
            )
        return self

    def to_telemetry(self) -> Telemetry:
        return Telemetry(
            ptsx=tuple(self.ptsx),
            ptsy=tuple(self.ptsy),
            x=self.x,
            y=self.y,
            psi=self.psi,
            speed=self.speed,
            steering_angle=self.steering_angle,
            throttle=self.throttle,
        )


def is_event_message(message: str) -> bool:
    return len(message) > 2 and message.startswith(EVENT_PREFIX)


def extract_payload(message: str) -> Optional[str]:
    """
    Return the JSON array text of an event message, or None if it has no data.
    """
    if "null" in message:
        return None
    start = message.find("[")
    end = message.rfind("}]")
    if start != -1 and end != -1:
        return message[start:end + 2]
    return None


def parse_event(payload: str) -> Tuple[str, Any]:
    """Split a JSON event array into (event_name, data)."""
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedTelemetryError(f"invalid JSON payload: {e}") from e
    if not isinstance(decoded, list) or not decoded or not isinstance(decoded[0], str):
        raise MalformedTelemetryError("event payload must be [name, data]")
    data = decoded[1] if len(decoded) > 1 else None
    return decoded[0], data


def parse_telemetry(data: Any) -> Telemetry:
    """Validate telemetry event data."""
    if not isinstance(data, dict):
        raise MalformedTelemetryError("telemetry data must be an object")
    try:
        return TelemetryMessage.model_validate(data).to_telemetry()
    except ValidationError as e:
        raise MalformedTelemetryError(str(e)) from e


def format_event(name: str, data: dict) -> str:
    """Frame an outbound event."""
    return EVENT_PREFIX + json.dumps([name, data], separators=(",", ":"))
