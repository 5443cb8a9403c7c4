from typing import Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class EventBase(BaseModel):
    name: str
    location: str
    start_date: str = Field(description="DD/MM/YYYY or DD/MM/YYYY HH:MM:SS")
    end_date: str = Field(description="DD/MM/YYYY or DD/MM/YYYY HH:MM:SS")
    registration_close_date: str = Field(description="DD/MM/YYYY or DD/MM/YYYY HH:MM:SS")

    @field_validator("name", "location", "start_date", "end_date", "registration_close_date")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class EventCreate(EventBase):
    pass


class EventUpdate(EventBase):
    pass


class EventResponse(BaseModel):
    id: int
    name: str
    location: str
    start_date: str
    end_date: str
    registration_close_date: str
    registration_open: bool
    registration_open_manual: bool


class OccupiedRange(BaseModel):
    start_date: str
    end_date: str


class RegistrationCreate(BaseModel):
    event_id: int
    user_id: int
    participant_name: str
    email: EmailStr
    affiliation: str
    proof_of_payment: Optional[str] = None


class RegistrationResponse(BaseModel):
    id: int
    event_id: int
    event_name: str
    user_id: int
    participant_name: str
    email: str
    affiliation: str
    status: str
    paid: bool
    has_proof_of_payment: bool
    created_at: str
    payment_deadline: str


class StatusUpdate(BaseModel):
    status: str
    note: Optional[str] = None
    actor: Optional[str] = None

    @field_validator("note")
    @classmethod
    def limit_note(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v) > 1000:
            raise ValueError("La nota no puede superar 1000 caracteres")
        return v


class PaymentUpdate(BaseModel):
    paid: bool
    proof_of_payment: Optional[str] = None


class StatusHistoryResponse(BaseModel):
    id: int
    previous_status: str
    new_status: str
    note: Optional[str] = None
    actor: str
    changed_at: str


class NotificationPreferenceResponse(BaseModel):
    user_id: int
    frequency: str
    types: str
    enabled: bool

    model_config = ConfigDict(from_attributes=True)


class NotificationPreferenceUpdate(BaseModel):
    frequency: str
    types: str
    enabled: bool = True


class NotificationResponse(BaseModel):
    id: int
    user_id: int
    event_id: Optional[int] = None
    registration_id: Optional[int] = None
    notification_type: str
    title: str
    message: str
    read: bool
    created_at: str


class NotificationReadUpdate(BaseModel):
    read: bool = True
