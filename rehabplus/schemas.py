# rehabplus/schemas.py
import json
from datetime import datetime, date, time
from decimal import Decimal
from typing import List, Optional, Dict, Any, Union
from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator, model_validator

from .models import (
    UserRole, PNStatus, AppointmentStatus, BookingType, PaymentStatus, LoyaltyTier, CertificateType,
)


# --- Base Schemas ---
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


def _blank_to_none(v):
    if isinstance(v, str) and not v.strip():
        return None
    return v


def _parse_strokes(v):
    if v is None:
        return v
    if isinstance(v, str):
        try:
            v = json.loads(v) if v.strip() else []
        except json.JSONDecodeError:
            raise ValueError("strokes_json must be valid JSON")
    if not isinstance(v, list):
        raise ValueError("strokes_json must be a list of strokes")
    return v


def _upper(v):
    return v.strip().upper() if isinstance(v, str) else v


def _non_zero(v):
    if v == 0:
        raise ValueError("value must not be zero")
    return v


# --- Auth ---
class LoginRequest(BaseSchema):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class LoginVerify2FA(BaseSchema):
    user_id: int = Field(..., alias="userId")
    token: str = Field(..., min_length=6)


class ChangePasswordRequest(BaseSchema):
    current_password: str
    new_password: str = Field(..., min_length=8)


class ProfileUpdate(BaseSchema):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone: Optional[str] = None
    email: Optional[EmailStr] = None


class TwoFactorEnable(BaseSchema):
    secret: str
    token: str


class TwoFactorToken(BaseSchema):
    token: str


class TwoFactorVerify(BaseSchema):
    user_id: int = Field(..., alias="userId")
    token: str


class TwoFactorDisable(BaseSchema):
    password: str


# --- Users and clinics ---
class ClinicBase(BaseSchema):
    code: str = Field(..., min_length=2, max_length=20)
    name: str = Field(..., min_length=1, max_length=255)
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None


class ClinicCreate(ClinicBase):
    pass


class ClinicUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None


class ClinicResponse(BaseSchema):
    id: int
    code: str
    name: str
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    active: bool


class StatusToggle(BaseSchema):
    active: bool


class UserCreate(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    role: UserRole
    clinic_id: Optional[int] = None
    phone: Optional[str] = None
    license_number: Optional[str] = None

    @model_validator(mode="after")
    def clinic_users_need_clinic(self):
        if self.role == UserRole.CLINIC and not self.clinic_id:
            raise ValueError("clinic_id is required for CLINIC users")
        return self


class UserUpdate(BaseSchema):
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=8)
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    role: Optional[UserRole] = None
    clinic_id: Optional[int] = None
    phone: Optional[str] = None
    license_number: Optional[str] = None


class UserResponse(BaseSchema):
    id: int
    email: str
    first_name: str
    last_name: str
    role: UserRole
    clinic_id: Optional[int] = None
    phone: Optional[str] = None
    license_number: Optional[str] = None
    active: bool
    totp_enabled: bool = False
    google_email: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


class GrantCreate(BaseSchema):
    user_id: int
    clinic_id: int


# --- Patients ---
class PatientBase(BaseSchema):
    title: Optional[str] = None
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    dob: date
    gender: Optional[str] = None
    pid: Optional[str] = None
    passport_no: Optional[str] = None
    ssn: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    diagnosis: str = Field(..., min_length=1)
    rehab_goal: Optional[str] = None
    body_area: Optional[str] = None
    frequency: Optional[str] = None
    expected_duration: Optional[str] = None
    doctor_note: Optional[str] = None
    precaution: Optional[str] = None
    contraindication: Optional[str] = None
    medical_history: Optional[str] = None

    blank_ids_to_none = field_validator("pid", "passport_no", "ssn", "email", mode="before")(_blank_to_none)


class PatientCreate(PatientBase):
    clinic_id: Optional[int] = None


class PatientUpdate(BaseSchema):
    title: Optional[str] = None
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    dob: Optional[date] = None
    gender: Optional[str] = None
    pid: Optional[str] = None
    passport_no: Optional[str] = None
    ssn: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    diagnosis: Optional[str] = None
    rehab_goal: Optional[str] = None
    body_area: Optional[str] = None
    frequency: Optional[str] = None
    expected_duration: Optional[str] = None
    doctor_note: Optional[str] = None
    precaution: Optional[str] = None
    contraindication: Optional[str] = None
    medical_history: Optional[str] = None

    blank_ids_to_none = field_validator("pid", "passport_no", "ssn", "email", mode="before")(_blank_to_none)


class PatientResponse(PatientBase):
    id: int
    hn: str
    pt_number: str
    clinic_id: int
    email: Optional[str] = None
    created_at: Optional[datetime] = None


class IdCheckRequest(BaseSchema):
    pid: Optional[str] = None
    passport_no: Optional[str] = None

    blank_to_none = field_validator("pid", "passport_no", mode="before")(_blank_to_none)

    @model_validator(mode="after")
    def one_identifier(self):
        if not self.pid and not self.passport_no:
            raise ValueError("pid or passport_no is required")
        return self


# --- PN cases ---
class PTAssessment(BaseSchema):
    pt_diagnosis: Optional[str] = None
    pt_chief_complaint: Optional[str] = None
    pt_present_history: Optional[str] = None
    pt_pain_score: Optional[int] = Field(None, ge=0, le=10)


class SoapNotes(BaseSchema):
    subjective: Optional[str] = None
    objective: Optional[str] = None
    assessment: Optional[str] = None
    plan: Optional[str] = None
    notes: Optional[str] = None


class PNCaseCreate(BaseSchema):
    patient_id: int
    diagnosis: str = Field(..., min_length=1)
    purpose: str = Field(..., min_length=1)
    chief_complaint: Optional[str] = None
    target_clinic_id: Optional[int] = None
    course_id: Optional[int] = None
    referring_doctor: Optional[str] = None
    notes: Optional[str] = None


class PNCaseUpdate(BaseSchema):
    diagnosis: Optional[str] = Field(None, min_length=1)
    purpose: Optional[str] = Field(None, min_length=1)
    chief_complaint: Optional[str] = None
    referring_doctor: Optional[str] = None
    notes: Optional[str] = None
    course_id: Optional[int] = None


class PNStatusUpdate(PTAssessment):
    status: PNStatus
    body_annotation_id: Optional[int] = None
    soap_notes: Optional[SoapNotes] = None
    cancellation_reason: Optional[str] = None
    reason: Optional[str] = None


class ReverseStatusRequest(BaseSchema):
    reason: str = Field(..., min_length=1)


class CertificateCreate(BaseSchema):
    certificate_type: CertificateType
    certificate_data: Dict[str, Any] = Field(default_factory=dict)


class CertificateUpdate(BaseSchema):
    certificate_data: Dict[str, Any]


class PNVisitCreate(BaseSchema):
    visit_date: date
    status: str = Field("SCHEDULED", pattern="^(SCHEDULED|COMPLETED|CANCELLED|NO_SHOW)$")
    chief_complaint: Optional[str] = None
    subjective: Optional[str] = None
    objective: Optional[str] = None
    assessment: Optional[str] = None
    plan: Optional[str] = None
    treatment_provided: Optional[str] = None
    therapist_id: Optional[int] = None


# --- Body annotations ---
class BodyAnnotationCreate(BaseSchema):
    entity_type: str = "pn_case"
    entity_id: Optional[int] = None
    strokes_json: Union[List[Any], str] = Field(default_factory=list)
    image_width: Optional[int] = Field(None, gt=0)
    image_height: Optional[int] = Field(None, gt=0)
    constant_pain: bool = False
    intermittent_pain: bool = False
    pain_type: Optional[str] = None
    aggravation: Optional[str] = None
    easing_factor: Optional[str] = None
    severity: int = Field(5, ge=0, le=10)
    notes: Optional[str] = None

    parse_strokes = field_validator("strokes_json", mode="before")(_parse_strokes)


class BodyAnnotationUpdate(BaseSchema):
    strokes_json: Optional[Union[List[Any], str]] = None
    image_width: Optional[int] = Field(None, gt=0)
    image_height: Optional[int] = Field(None, gt=0)
    constant_pain: Optional[bool] = None
    intermittent_pain: Optional[bool] = None
    pain_type: Optional[str] = None
    aggravation: Optional[str] = None
    easing_factor: Optional[str] = None
    severity: Optional[int] = Field(None, ge=0, le=10)
    notes: Optional[str] = None

    parse_strokes = field_validator("strokes_json", mode="before")(_parse_strokes)


# --- Appointments ---
class AppointmentBase(BaseSchema):
    booking_type: BookingType = BookingType.OLD_PATIENT
    patient_id: Optional[int] = None
    walk_in_name: Optional[str] = None
    walk_in_email: Optional[EmailStr] = None
    walk_in_phone: Optional[str] = None

    upper_booking_type = field_validator("booking_type", mode="before")(_upper)

    blank_to_none = field_validator("walk_in_email", "walk_in_phone", mode="before")(_blank_to_none)


class AppointmentCreate(AppointmentBase):
    pt_id: int
    clinic_id: int
    appointment_date: date
    start_time: time
    end_time: time
    appointment_type: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    course_id: Optional[int] = None
    pn_case_id: Optional[int] = None
    auto_create_pn: bool = False
    pn_diagnosis: Optional[str] = None
    pn_purpose: Optional[str] = None
    send_email: bool = False

    @model_validator(mode="after")
    def check_booking(self):
        if self.booking_type == BookingType.OLD_PATIENT and not self.patient_id:
            raise ValueError("patient_id is required for OLD_PATIENT bookings")
        if self.booking_type == BookingType.WALK_IN and not (self.walk_in_name or "").strip():
            raise ValueError("walk_in_name is required for WALK_IN bookings")
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AppointmentUpdate(PTAssessment):
    booking_type: Optional[BookingType] = None
    patient_id: Optional[int] = None
    walk_in_name: Optional[str] = None
    walk_in_email: Optional[EmailStr] = None
    walk_in_phone: Optional[str] = None
    pt_id: Optional[int] = None
    appointment_date: Optional[date] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    status: Optional[AppointmentStatus] = None
    appointment_type: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    course_id: Optional[int] = None
    cancellation_reason: Optional[str] = None

    upper_booking_type = field_validator("booking_type", mode="before")(_upper)
    blank_to_none = field_validator("walk_in_email", "walk_in_phone", mode="before")(_blank_to_none)


class AppointmentCancel(BaseSchema):
    reason: Optional[str] = None


class AppointmentCompletion(BaseSchema):
    body_annotation: Optional[BodyAnnotationCreate] = None
    body_annotation_id: Optional[int] = None
    assessment: Optional[PTAssessment] = None
    bodycheck_findings: Optional[Dict[str, Any]] = None


# --- Courses ---
class CourseTemplateCreate(BaseSchema):
    template_name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    total_sessions: int = Field(..., ge=1)
    default_price: Decimal = Field(..., gt=0)
    validity_days: Optional[int] = Field(None, ge=1)
    active: bool = True


class CourseTemplateUpdate(BaseSchema):
    template_name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    total_sessions: Optional[int] = Field(None, ge=1)
    default_price: Optional[Decimal] = Field(None, gt=0)
    validity_days: Optional[int] = Field(None, ge=1)
    active: Optional[bool] = None


class CoursePurchase(BaseSchema):
    template_id: int
    patient_id: int
    clinic_id: int
    purchase_date: Optional[date] = None
    course_price: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None
    bill_id: Optional[int] = None


class SharedUserCreate(BaseSchema):
    patient_id: int
    notes: Optional[str] = None


class CourseAdjust(BaseSchema):
    sessions: int
    notes: Optional[str] = None

    non_zero = field_validator("sessions")(_non_zero)


# --- Bills ---
class BillItemIn(BaseSchema):
    service_id: Optional[int] = None
    service_name: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    unit_price: Decimal = Field(..., ge=0)
    total_price: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None


class BillCreate(BaseSchema):
    patient_id: Optional[int] = None
    walk_in_name: Optional[str] = None
    clinic_id: int
    pn_case_id: Optional[int] = None
    appointment_id: Optional[int] = None
    bill_date: Optional[date] = None
    due_date: Optional[date] = None
    discount: Decimal = Field(Decimal("0"), ge=0)
    tax: Decimal = Field(Decimal("0"), ge=0)
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    items: List[BillItemIn] = Field(default_factory=list)
    course_template_id: Optional[int] = None

    @model_validator(mode="after")
    def who_is_billed(self):
        if not self.patient_id and not (self.walk_in_name or "").strip():
            raise ValueError("patient_id or walk_in_name is required")
        return self


class BillUpdate(BaseSchema):
    due_date: Optional[date] = None
    discount: Optional[Decimal] = Field(None, ge=0)
    tax: Optional[Decimal] = Field(None, ge=0)
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    items: Optional[List[BillItemIn]] = None


class PaymentStatusUpdate(BaseSchema):
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    payment_date: Optional[datetime] = None


# --- Loyalty ---
class TierRuleUpdate(BaseSchema):
    min_lifetime_spending: Optional[Decimal] = Field(None, ge=0)
    points_per_100_baht: Optional[Decimal] = Field(None, ge=0)
    discount_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    description: Optional[str] = None


class MemberUpdate(BaseSchema):
    membership_tier: LoyaltyTier


class PointsAdjust(BaseSchema):
    points: int
    description: Optional[str] = None

    non_zero = field_validator("points")(_non_zero)


class GiftCardCatalogCreate(BaseSchema):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    points_required: int = Field(..., gt=0)
    gift_card_value: Decimal = Field(..., gt=0)
    stock_quantity: Optional[int] = Field(None, ge=0)


class RedeemRequest(BaseSchema):
    catalog_id: int


# --- Chat ---
class ChatMessageCreate(BaseSchema):
    conversation_id: int = Field(..., alias="conversationId")
    recipient_id: int = Field(..., alias="recipientId")
    message: str = Field(..., min_length=1)


class ConversationCreate(BaseSchema):
    other_user_id: int = Field(..., alias="otherUserId")


class TypingUpdate(BaseSchema):
    conversation_id: int = Field(..., alias="conversationId")
    is_typing: bool = Field(..., alias="isTyping")


# --- Expenses ---
class ExpenseCategoryCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class ExpenseCreate(BaseSchema):
    category_id: int
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = None
    expense_date: date
    receipt_number: Optional[str] = None


class ExpenseUpdate(BaseSchema):
    category_id: Optional[int] = None
    amount: Optional[Decimal] = Field(None, gt=0)
    description: Optional[str] = None
    expense_date: Optional[date] = None
    receipt_number: Optional[str] = None


# --- Integration settings ---
class SmtpSettings(BaseSchema):
    enabled: bool = False
    host: Optional[str] = None
    port: int = 587
    secure: str = Field("tls", pattern="^(ssl|tls|none)$")
    user: Optional[str] = None
    password: Optional[str] = None
    from_name: Optional[str] = Field(None, alias="fromName")
    from_email: Optional[str] = Field(None, alias="fromEmail")


class EventNotifications(BaseSchema):
    newAppointment: bool = True
    appointmentRescheduled: bool = True
    appointmentCancelled: bool = True
    newPatient: bool = False
    paymentReceived: bool = False


def _parse_events(v):
    # Older rows stored the event map as a JSON string
    for _ in range(2):
        if not isinstance(v, str):
            break
        try:
            v = json.loads(v)
        except json.JSONDecodeError:
            return {}
    return v if isinstance(v, dict) else {}


class LineSettings(BaseSchema):
    enabled: bool = False
    access_token: Optional[str] = Field(None, alias="accessToken")
    target_id: Optional[str] = Field(None, alias="targetId")
    event_notifications: EventNotifications = Field(default_factory=EventNotifications, alias="eventNotifications")

    parse_events = field_validator("event_notifications", mode="before")(_parse_events)


class SmsSettings(BaseSchema):
    enabled: bool = False
    api_key: Optional[str] = Field(None, alias="apiKey")
    api_secret: Optional[str] = Field(None, alias="apiSecret")
    sender: str = "RehabPlus"
    sms_type: str = Field("standard", alias="smsType")
    recipients: List[str] = Field(default_factory=list)
    event_notifications: EventNotifications = Field(default_factory=EventNotifications, alias="eventNotifications")

    parse_events = field_validator("event_notifications", mode="before")(_parse_events)

    @field_validator("recipients", mode="before")
    @classmethod
    def split_recipients(cls, v):
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v or []


class GoogleCalendarSettings(BaseSchema):
    enabled: bool = False
    service_account_email: Optional[str] = Field(None, alias="serviceAccountEmail")
    private_key: Optional[str] = Field(None, alias="privateKey")
    calendar_id: Optional[str] = Field(None, alias="calendarId")
    impersonate_user: Optional[str] = Field(None, alias="impersonateUser")
    time_zone: str = Field("Asia/Bangkok", alias="timeZone")
    send_invites: bool = Field(False, alias="sendInvites")


class SmsTemplateSettings(BaseSchema):
    template: str = Field(..., min_length=1, max_length=1000)


class ThemeSettings(BaseSchema):
    app_name: str = "RehabPlus"
    primary_color: str = Field("#0d6efd", pattern="^#[0-9a-fA-F]{6}$")
    logo_url: Optional[str] = None
    clinic_name: Optional[str] = None


class TestMessageRequest(BaseSchema):
    recipient: Optional[str] = None
    message: Optional[str] = None
