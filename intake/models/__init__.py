"""Data models for the intake layer."""

from .records import (
    AdmissionFields,
    AdmissionRecord,
    AppointmentDraft,
    AppointmentRecord,
    UserInfo,
)
from .session import FlowState, SessionData, SessionRecord, mobile_from_user_id

__all__ = [
    "AdmissionFields",
    "AdmissionRecord",
    "AppointmentDraft",
    "AppointmentRecord",
    "FlowState",
    "SessionData",
    "SessionRecord",
    "UserInfo",
    "mobile_from_user_id",
]
