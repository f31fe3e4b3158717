"""Wire format shared by both transports and the relay service.

Every chat message travels as a `WireMessage`: a self-describing unit
carrying enough to de-duplicate and persist it without another round-trip.
"""

from __future__ import annotations

import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from .models import ANONYMOUS_DISPLAY_NAME, DeliveryState, Message

# Namespace for message ids derived from (room_id, sender_id, timestamp)
_MID_NAMESPACE = uuid.UUID("6b0e3a52-5c1f-4d0e-9a7e-2f7d3c1a9b44")


def derive_mid(room_id: str, sender_id: str, timestamp: int) -> str:
    """Deterministic message id for messages that arrive without one."""
    return str(uuid.uuid5(_MID_NAMESPACE, f"{room_id}|{sender_id}|{timestamp}"))


class WireMessage(BaseModel):
    mid: str = ""
    room_id: str = Field(min_length=1)
    sender_id: str = Field(min_length=1)
    display_name: str = ANONYMOUS_DISPLAY_NAME
    text: str
    timestamp: int = Field(ge=0)

    @model_validator(mode="after")
    def _fill_mid(self) -> "WireMessage":
        if not self.mid:
            self.mid = derive_mid(self.room_id, self.sender_id, self.timestamp)
        return self

    @classmethod
    def from_message(cls, message: Message) -> "WireMessage":
        return cls(
            mid=message.mid,
            room_id=message.room_id,
            sender_id=message.sender_id,
            display_name=message.display_name,
            text=message.text,
            timestamp=message.timestamp,
        )

    def to_message(self, state: DeliveryState = DeliveryState.RECEIVED) -> Message:
        return Message(
            mid=self.mid,
            room_id=self.room_id,
            sender_id=self.sender_id,
            display_name=self.display_name,
            text=self.text,
            timestamp=self.timestamp,
            delivery_state=state,
        )


# --- Mesh frames ---


class HelloFrame(BaseModel):
    """First frame on every mesh connection, in both directions."""

    type: Literal["hello"] = "hello"
    peer_id: str = Field(min_length=1)
    room_id: str = Field(min_length=1)
    display_name: str = ANONYMOUS_DISPLAY_NAME


class MessageFrame(BaseModel):
    type: Literal["message"] = "message"
    message: WireMessage


def parse_frame(data: Any) -> HelloFrame | MessageFrame:
    """Parse a decoded mesh frame.

    Raises:
        ValueError: On a non-object frame or an unknown frame type (pydantic
            errors are ValueErrors too).
    """
    if not isinstance(data, dict):
        raise ValueError(f"Frame is not an object: {type(data).__name__}")
    frame_type = data.get("type")
    if frame_type == "hello":
        return HelloFrame.model_validate(data)
    if frame_type == "message":
        return MessageFrame.model_validate(data)
    raise ValueError(f"Unknown frame type: {frame_type!r}")


# --- Relay request/response models ---


class JoinRequest(BaseModel):
    peer_id: str = Field(min_length=1)
    display_name: str = ANONYMOUS_DISPLAY_NAME


class LeaveRequest(BaseModel):
    peer_id: str = Field(min_length=1)


class RelaySendRequest(BaseModel):
    peer_id: str = Field(min_length=1)
    message: WireMessage


class RelaySendResponse(BaseModel):
    mid: str
    delivered: int


class MemberInfo(BaseModel):
    peer_id: str
    display_name: str = ANONYMOUS_DISPLAY_NAME


class JoinResponse(BaseModel):
    room_id: str
    members: list[MemberInfo]


class SignalRegistration(BaseModel):
    address: str = Field(min_length=1)
