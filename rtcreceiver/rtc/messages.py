"""
Signaling wire format.

Messages travel as text frames of the form ``"<tag>:" + JSON(payload)`` where
the tag is ``sdp`` for session descriptions and ``ice`` for connectivity
candidates.  Payloads are validated with pydantic and converted into the
immutable domain types used by the orchestrator.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, validator

from ..errors import MalformedPayload, UnknownSdpType

LOG = logging.getLogger(__name__)

SDP_TAG = "sdp"
ICE_TAG = "ice"

_RTPMAP = re.compile(r"^a=rtpmap:(\d+)\s+([^/\s]+)", re.MULTILINE)


class SdpType(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    PRANSWER = "pranswer"
    ROLLBACK = "rollback"

    @classmethod
    def parse(cls, value: object, *, lenient: bool = False) -> "SdpType":
        """
        Match ``value`` case-insensitively against the known description kinds.

        Unknown kinds raise :class:`UnknownSdpType` unless ``lenient`` is set,
        in which case they are read as an offer.
        """

        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        if lenient:
            LOG.warning("Unknown session description type %r; treating it as an offer.", value)
            return cls.OFFER
        raise UnknownSdpType(f"unknown session description type {value!r}")


@dataclass(frozen=True)
class SessionDescription:
    kind: SdpType
    body: str

    def to_payload(self) -> "SdpPayload":
        return SdpPayload(type=self.kind.value, sdp=self.body)


@dataclass(frozen=True)
class IceCandidate:
    """Connectivity candidate exchanged over the signaling channel."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: int = 0

    def to_payload(self) -> "IcePayload":
        return IcePayload(
            candidate=self.candidate,
            sdp_mid=self.sdp_mid,
            sdp_mline_index=self.sdp_mline_index,
        )


# ------------------------------------------------------------------ wire models


class SdpPayload(BaseModel):
    type: str
    sdp: str

    def to_description(self, *, lenient: bool = False) -> SessionDescription:
        return SessionDescription(kind=SdpType.parse(self.type, lenient=lenient), body=self.sdp)


class IcePayload(BaseModel):
    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: int = Field(default=0, alias="sdpMLineIndex")
    model_config = ConfigDict(populate_by_name=True)

    @validator("sdp_mline_index", pre=True)
    def _default_mline_index(cls, value: object) -> object:
        return 0 if value is None else value

    def to_candidate(self) -> IceCandidate:
        return IceCandidate(
            candidate=self.candidate,
            sdp_mid=self.sdp_mid,
            sdp_mline_index=int(self.sdp_mline_index),
        )


Payload = Union[SessionDescription, IceCandidate]


@dataclass(frozen=True)
class SignalingEnvelope:
    tag: str
    payload: Payload


def encode_envelope(payload: Payload) -> str:
    """
    Serialise a description or candidate into a tagged text frame.
    """

    if isinstance(payload, SessionDescription):
        return f"{SDP_TAG}:{payload.to_payload().model_dump_json()}"
    if isinstance(payload, IceCandidate):
        return f"{ICE_TAG}:{payload.to_payload().model_dump_json(by_alias=True)}"
    raise TypeError(f"cannot encode {type(payload).__name__} as a signaling envelope")


def decode_envelope(text: str, *, lenient_sdp_type: bool = False) -> Optional[SignalingEnvelope]:
    """
    Decode a text frame into an envelope.

    Returns ``None`` for frames with an unknown tag.  Raises
    :class:`MalformedPayload` when a known tag carries an invalid payload.
    """

    tag, sep, body = text.partition(":")
    if not sep or tag not in (SDP_TAG, ICE_TAG):
        LOG.warning("Ignoring signaling message with unknown tag: %.80s", text)
        return None

    if tag == SDP_TAG:
        try:
            payload = SdpPayload.model_validate_json(body)
        except ValidationError as exc:
            raise MalformedPayload(f"invalid sdp payload: {exc.errors()[0]['msg']}") from exc
        return SignalingEnvelope(tag=tag, payload=payload.to_description(lenient=lenient_sdp_type))

    try:
        ice = IcePayload.model_validate_json(body)
    except ValidationError as exc:
        raise MalformedPayload(f"invalid ice payload: {exc.errors()[0]['msg']}") from exc
    return SignalingEnvelope(tag=tag, payload=ice.to_candidate())


def sdp_codecs(body: str) -> List[str]:
    """
    Return the codec names announced by ``a=rtpmap`` lines, in order, without
    duplicates.
    """

    seen: List[str] = []
    for match in _RTPMAP.finditer(body or ""):
        name = match.group(2)
        if name not in seen:
            seen.append(name)
    return seen


__all__ = [
    "ICE_TAG",
    "IceCandidate",
    "IcePayload",
    "SDP_TAG",
    "SdpPayload",
    "SdpType",
    "SessionDescription",
    "SignalingEnvelope",
    "decode_envelope",
    "encode_envelope",
    "sdp_codecs",
]
