# rehabplus/models.py
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Time, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, Boolean, JSON, Numeric, Index, UniqueConstraint,
    CheckConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    PT = "PT"
    CLINIC = "CLINIC"
    USER = "USER"


class PNStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class BookingType(str, enum.Enum):
    OLD_PATIENT = "OLD_PATIENT"
    WALK_IN = "WALK_IN"


class CourseStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class CourseAction(str, enum.Enum):
    PURCHASE = "PURCHASE"
    USE = "USE"
    RETURN = "RETURN"
    ADJUST = "ADJUST"


class PaymentStatus(str, enum.Enum):
    UNPAID = "UNPAID"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class LoyaltyTier(str, enum.Enum):
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"


class LoyaltyTransactionType(str, enum.Enum):
    EARN = "EARN"
    REDEEM = "REDEEM"
    ADJUST = "ADJUST"


class GiftCardStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    USED = "USED"
    EXPIRED = "EXPIRED"


class CertificateType(str, enum.Enum):
    thai = "thai"
    english = "english"


# --- Clinics and users ---

class Clinic(Base):
    __tablename__ = "clinics"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    address = Column(Text, nullable=True)
    phone = Column(String(50), nullable=True)
    email = Column(String(255), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())


class User(Base):
    """Staff account with optional TOTP and Google link"""
    __tablename__ = "users"
    __table_args__ = (
        Index('idx_users_role_active', 'role', 'active'),
    )

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    role = Column(SQLAlchemyEnum(UserRole, name='user_role'), default=UserRole.USER, nullable=False)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=True)
    phone = Column(String(50), nullable=True)
    license_number = Column(String(100), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    last_login = Column(DateTime, nullable=True)

    # TOTP two-factor
    totp_secret = Column(Text, nullable=True)
    totp_enabled = Column(Boolean, default=False, nullable=False)
    totp_backup_codes = Column(JSON, nullable=True)
    totp_enabled_at = Column(DateTime, nullable=True)
    last_totp_verified_at = Column(DateTime, nullable=True)

    # Google account link
    google_id = Column(String(255), unique=True, nullable=True)
    google_email = Column(String(255), nullable=True)
    google_linked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    clinic = relationship("Clinic")
    grants = relationship("UserClinicGrant", back_populates="user", foreign_keys="UserClinicGrant.user_id",
                          cascade="all, delete-orphan")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class UserClinicGrant(Base):
    __tablename__ = "user_clinic_grants"
    __table_args__ = (UniqueConstraint('user_id', 'clinic_id', name='uq_user_clinic_grant'),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    granted_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User", back_populates="grants", foreign_keys=[user_id])
    clinic = relationship("Clinic")


# --- Patients ---

class PTHNSequence(Base):
    """Per-year counter row locked while a PTHN is issued"""
    __tablename__ = "pthn_sequence"

    year = Column(Integer, primary_key=True, autoincrement=False)
    last_sequence = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, onupdate=func.now())


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = (
        Index('idx_patients_clinic', 'clinic_id'),
        Index('idx_patients_name', 'first_name', 'last_name'),
    )

    id = Column(Integer, primary_key=True, index=True)
    hn = Column(String(20), unique=True, nullable=False, index=True)
    pt_number = Column(String(50), unique=True, nullable=False)
    pid = Column(String(13), unique=True, nullable=True)
    passport_no = Column(String(20), nullable=True)
    ssn = Column(String(50), nullable=True)
    title = Column(String(20), nullable=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    dob = Column(Date, nullable=False)
    gender = Column(String(20), nullable=True)
    phone = Column(String(50), nullable=True)
    email = Column(String(255), nullable=True)
    address = Column(Text, nullable=True)
    emergency_contact = Column(String(255), nullable=True)
    emergency_phone = Column(String(50), nullable=True)
    diagnosis = Column(Text, nullable=False)
    rehab_goal = Column(Text, nullable=True)
    body_area = Column(String(255), nullable=True)
    frequency = Column(String(100), nullable=True)
    expected_duration = Column(String(100), nullable=True)
    doctor_note = Column(Text, nullable=True)
    precaution = Column(Text, nullable=True)
    contraindication = Column(Text, nullable=True)
    medical_history = Column(Text, nullable=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    clinic = relationship("Clinic")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# --- PN cases ---

class PNCase(Base):
    """A physiotherapy treatment episode / referral"""
    __tablename__ = "pn_cases"
    __table_args__ = (
        Index('idx_pn_status', 'status'),
        Index('idx_pn_patient', 'patient_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    pn_code = Column(String(20), unique=True, nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    diagnosis = Column(Text, nullable=False)
    purpose = Column(Text, nullable=False)
    chief_complaint = Column(Text, nullable=True)
    status = Column(SQLAlchemyEnum(PNStatus, name='pn_status'), default=PNStatus.PENDING, nullable=False)
    source_clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    target_clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    course_id = Column(Integer, ForeignKey("courses.id", use_alter=True, name="fk_pn_course"), nullable=True)
    body_annotation_id = Column(Integer, ForeignKey("body_annotations.id"), nullable=True)
    bill_id = Column(Integer, ForeignKey("bills.id", use_alter=True, name="fk_pn_bill"), nullable=True)
    referring_doctor = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    # PT assessment captured when a case outside the main clinic is accepted
    pt_diagnosis = Column(Text, nullable=True)
    pt_chief_complaint = Column(Text, nullable=True)
    pt_present_history = Column(Text, nullable=True)
    pt_pain_score = Column(Integer, nullable=True)

    accepted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    is_reversed = Column(Boolean, default=False, nullable=False)
    last_reversal_reason = Column(Text, nullable=True)
    last_reversed_at = Column(DateTime, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    patient = relationship("Patient")
    source_clinic = relationship("Clinic", foreign_keys=[source_clinic_id])
    target_clinic = relationship("Clinic", foreign_keys=[target_clinic_id])
    course = relationship("Course", foreign_keys=[course_id])


class PNStatusHistory(Base):
    __tablename__ = "pn_status_history"

    id = Column(Integer, primary_key=True, index=True)
    pn_id = Column(Integer, ForeignKey("pn_cases.id"), nullable=False, index=True)
    old_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=False)
    changed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    change_reason = Column(Text, nullable=True)
    is_reversal = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.now)


class PNSoapNote(Base):
    __tablename__ = "pn_soap_notes"

    id = Column(Integer, primary_key=True, index=True)
    pn_id = Column(Integer, ForeignKey("pn_cases.id"), nullable=False, index=True)
    subjective = Column(Text, nullable=False)
    objective = Column(Text, nullable=False)
    assessment = Column(Text, nullable=False)
    plan = Column(Text, nullable=False)
    timestamp = Column(DateTime, default=datetime.now)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class PNVisit(Base):
    __tablename__ = "pn_visits"
    __table_args__ = (UniqueConstraint('pn_id', 'visit_no', name='uq_pn_visit_no'),)

    id = Column(Integer, primary_key=True, index=True)
    pn_id = Column(Integer, ForeignKey("pn_cases.id"), nullable=False, index=True)
    visit_no = Column(Integer, nullable=False)
    visit_date = Column(Date, nullable=False)
    status = Column(String(20), default="SCHEDULED", nullable=False)
    chief_complaint = Column(Text, nullable=True)
    subjective = Column(Text, nullable=True)
    objective = Column(Text, nullable=True)
    assessment = Column(Text, nullable=True)
    plan = Column(Text, nullable=True)
    treatment_provided = Column(Text, nullable=True)
    therapist_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.now)


class PNAttachment(Base):
    __tablename__ = "pn_attachments"

    id = Column(Integer, primary_key=True, index=True)
    pn_id = Column(Integer, ForeignKey("pn_cases.id"), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=False)
    mime_type = Column(String(100), nullable=True)
    file_size = Column(Integer, nullable=True)
    uploaded_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class PTCertificate(Base):
    __tablename__ = "pt_certificates"

    id = Column(Integer, primary_key=True, index=True)
    pn_id = Column(Integer, ForeignKey("pn_cases.id"), nullable=False, index=True)
    certificate_type = Column(SQLAlchemyEnum(CertificateType, name='certificate_type'), nullable=False)
    certificate_data = Column(JSON, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())


# --- Appointments ---

class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appt_pt_date', 'pt_id', 'appointment_date'),
        Index('idx_appt_clinic_date', 'clinic_id', 'appointment_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    booking_type = Column(SQLAlchemyEnum(BookingType, name='booking_type'), default=BookingType.OLD_PATIENT, nullable=False)
    walk_in_name = Column(String(255), nullable=True)
    walk_in_email = Column(String(255), nullable=True)
    walk_in_phone = Column(String(50), nullable=True)
    pt_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    appointment_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), default=AppointmentStatus.SCHEDULED, nullable=False)
    appointment_type = Column(String(100), nullable=True)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    pn_case_id = Column(Integer, ForeignKey("pn_cases.id"), nullable=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=True)
    body_annotation_id = Column(Integer, ForeignKey("body_annotations.id"), nullable=True)
    calendar_event_id = Column(String(255), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    patient = relationship("Patient")
    pt = relationship("User", foreign_keys=[pt_id])
    clinic = relationship("Clinic")
    pn_case = relationship("PNCase", foreign_keys=[pn_case_id])
    course = relationship("Course", foreign_keys=[course_id])

    @property
    def display_name(self) -> str:
        if self.booking_type == BookingType.WALK_IN or not self.patient:
            return self.walk_in_name or ""
        return self.patient.full_name


class Bodycheck(Base):
    __tablename__ = "bodychecks"

    id = Column(Integer, primary_key=True, index=True)
    pn_id = Column(Integer, ForeignKey("pn_cases.id"), nullable=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    findings = Column(JSON, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class BodyAnnotation(Base):
    """Freehand strokes drawn over the body diagram plus pain characteristics"""
    __tablename__ = "body_annotations"
    __table_args__ = (
        Index('idx_annotation_entity', 'entity_type', 'entity_id'),
        CheckConstraint('severity >= 0 AND severity <= 10', name='ck_annotation_severity'),
    )

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)
    strokes_json = Column(JSON, nullable=False)
    image_width = Column(Integer, nullable=True)
    image_height = Column(Integer, nullable=True)
    constant_pain = Column(Boolean, default=False, nullable=False)
    intermittent_pain = Column(Boolean, default=False, nullable=False)
    pain_type = Column(String(255), nullable=True)
    aggravation = Column(Text, nullable=True)
    easing_factor = Column(Text, nullable=True)
    severity = Column(Integer, default=5, nullable=False)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())


# --- Courses ---

class CourseTemplate(Base):
    __tablename__ = "course_templates"

    id = Column(Integer, primary_key=True, index=True)
    template_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    total_sessions = Column(Integer, nullable=False)
    default_price = Column(Numeric(12, 2), nullable=False)
    validity_days = Column(Integer, nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())


class Course(Base):
    """A purchased bundle of sessions owned by one patient"""
    __tablename__ = "courses"
    __table_args__ = (
        CheckConstraint('remaining_sessions >= 0', name='ck_course_remaining_non_negative'),
    )

    id = Column(Integer, primary_key=True, index=True)
    course_code = Column(String(20), unique=True, nullable=False)
    template_id = Column(Integer, ForeignKey("course_templates.id"), nullable=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    course_name = Column(String(255), nullable=False)
    total_sessions = Column(Integer, nullable=False)
    used_sessions = Column(Integer, default=0, nullable=False)
    remaining_sessions = Column(Integer, nullable=False)
    course_price = Column(Numeric(12, 2), nullable=False, default=0)
    purchase_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=True)
    status = Column(SQLAlchemyEnum(CourseStatus, name='course_status'), default=CourseStatus.ACTIVE, nullable=False)
    bill_id = Column(Integer, ForeignKey("bills.id", use_alter=True, name="fk_course_bill"), nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    patient = relationship("Patient")
    template = relationship("CourseTemplate")
    shared_users = relationship("CourseSharedUser", back_populates="course", cascade="all, delete-orphan")


class CourseSharedUser(Base):
    __tablename__ = "course_shared_users"
    __table_args__ = (UniqueConstraint('course_id', 'patient_id', name='uq_course_shared_patient'),)

    id = Column(Integer, primary_key=True, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    shared_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    course = relationship("Course", back_populates="shared_users")
    patient = relationship("Patient")


class CourseUsageHistory(Base):
    """Ledger of course session movements"""
    __tablename__ = "course_usage_history"
    __table_args__ = (Index('idx_course_usage_course_pn', 'course_id', 'pn_id'),)

    id = Column(Integer, primary_key=True, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False)
    bill_id = Column(Integer, ForeignKey("bills.id"), nullable=True)
    pn_id = Column(Integer, ForeignKey("pn_cases.id"), nullable=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    sessions_used = Column(Integer, nullable=False, default=1)
    usage_date = Column(Date, nullable=False)
    action_type = Column(SQLAlchemyEnum(CourseAction, name='course_action'), nullable=False)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.now)


# --- Billing ---

class Service(Base):
    __tablename__ = "services"

    id = Column(Integer, primary_key=True, index=True)
    service_code = Column(String(50), unique=True, nullable=True)
    service_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    default_price = Column(Numeric(12, 2), nullable=False, default=0)
    active = Column(Boolean, default=True, nullable=False)


class Bill(Base):
    __tablename__ = "bills"
    __table_args__ = (Index('idx_bills_clinic_status', 'clinic_id', 'payment_status'),)

    id = Column(Integer, primary_key=True, index=True)
    bill_code = Column(String(30), unique=True, nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    walk_in_name = Column(String(255), nullable=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False)
    pn_case_id = Column(Integer, ForeignKey("pn_cases.id"), nullable=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    bill_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    payment_status = Column(SQLAlchemyEnum(PaymentStatus, name='payment_status'), default=PaymentStatus.UNPAID, nullable=False)
    payment_method = Column(String(50), nullable=True)
    payment_date = Column(DateTime, nullable=True)
    loyalty_awarded = Column(Boolean, default=False, nullable=False)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    patient = relationship("Patient")
    clinic = relationship("Clinic")
    items = relationship("BillItem", back_populates="bill", cascade="all, delete-orphan")


class BillItem(Base):
    __tablename__ = "bill_items"

    id = Column(Integer, primary_key=True, index=True)
    bill_id = Column(Integer, ForeignKey("bills.id"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=True)
    service_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)
    total_price = Column(Numeric(12, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)

    bill = relationship("Bill", back_populates="items")


# --- Loyalty ---

class LoyaltyTierRule(Base):
    __tablename__ = "loyalty_tier_rules"

    id = Column(Integer, primary_key=True, index=True)
    tier = Column(SQLAlchemyEnum(LoyaltyTier, name='loyalty_tier'), unique=True, nullable=False)
    min_lifetime_spending = Column(Numeric(12, 2), nullable=False, default=0)
    points_per_100_baht = Column(Numeric(6, 2), nullable=False, default=1)
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    description = Column(Text, nullable=True)


class LoyaltyMember(Base):
    __tablename__ = "loyalty_members"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), unique=True, nullable=False)
    membership_tier = Column(SQLAlchemyEnum(LoyaltyTier, name='loyalty_tier'), default=LoyaltyTier.BRONZE, nullable=False)
    total_points = Column(Integer, nullable=False, default=0)
    available_points = Column(Integer, nullable=False, default=0)
    lifetime_spending = Column(Numeric(12, 2), nullable=False, default=0)
    member_since = Column(Date, nullable=True)
    last_activity = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    patient = relationship("Patient")


class LoyaltyTransaction(Base):
    __tablename__ = "loyalty_transactions"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("loyalty_members.id"), nullable=False, index=True)
    transaction_type = Column(SQLAlchemyEnum(LoyaltyTransactionType, name='loyalty_transaction_type'), nullable=False)
    points = Column(Integer, nullable=False)
    bill_id = Column(Integer, ForeignKey("bills.id"), nullable=True)
    description = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.now)


class GiftCardCatalog(Base):
    __tablename__ = "gift_card_catalog"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    points_required = Column(Integer, nullable=False)
    gift_card_value = Column(Numeric(12, 2), nullable=False)
    stock_quantity = Column(Integer, nullable=True)
    active = Column(Boolean, default=True, nullable=False)


class GiftCardRedemption(Base):
    __tablename__ = "gift_card_redemptions"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("loyalty_members.id"), nullable=False)
    catalog_id = Column(Integer, ForeignKey("gift_card_catalog.id"), nullable=False)
    gift_card_code = Column(String(30), unique=True, nullable=False)
    points_used = Column(Integer, nullable=False)
    value = Column(Numeric(12, 2), nullable=False)
    status = Column(SQLAlchemyEnum(GiftCardStatus, name='gift_card_status'), default=GiftCardStatus.ACTIVE, nullable=False)
    expiry_date = Column(Date, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


# --- Chat ---

class ChatConversation(Base):
    """Two-party conversation; the pair is stored ordered so it is unique"""
    __tablename__ = "chat_conversations"
    __table_args__ = (
        UniqueConstraint('user1_id', 'user2_id', name='uq_chat_pair'),
        CheckConstraint('user1_id < user2_id', name='ck_chat_pair_ordered'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user1_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    user2_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    last_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now)

    def other_user_id(self, user_id: int) -> int:
        return self.user2_id if self.user1_id == user_id else self.user1_id


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (Index('idx_chat_msg_conv', 'conversation_id', 'created_at'),)

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("chat_conversations.id"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    message = Column(Text, nullable=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now)


class ChatTypingStatus(Base):
    __tablename__ = "chat_typing_status"
    __table_args__ = (UniqueConstraint('conversation_id', 'user_id', name='uq_chat_typing'),)

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("chat_conversations.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    last_typing_at = Column(DateTime, default=datetime.now, nullable=False)


# --- Expenses ---

class ExpenseCategory(Base):
    __tablename__ = "expense_categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)


class Expense(Base):
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, index=True)
    category_id = Column(Integer, ForeignKey("expense_categories.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    description = Column(Text, nullable=True)
    expense_date = Column(Date, nullable=False, index=True)
    receipt_number = Column(String(100), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    category = relationship("ExpenseCategory")


# --- Settings and audit ---

class NotificationSetting(Base):
    """Per-tenant integration settings stored as JSON per setting type"""
    __tablename__ = "notification_settings"

    id = Column(Integer, primary_key=True, index=True)
    setting_type = Column(String(50), unique=True, nullable=False)
    setting_value = Column(Text, nullable=False, default="{}")
    updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_user_date', 'user_id', 'timestamp'),
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False, default="GENERAL")
    entity_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    timestamp = Column(DateTime, default=datetime.now, index=True)
