from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


INSTRUMENT_STATUSES = ("available", "unavailable", "maintenance")
SESSION_STATUSES = ("active", "completed", "terminated")
TERMINAL_SESSION_STATUSES = ("completed", "terminated")
USER_ROLES = ("admin", "user")


class Instrument(Base):
    __tablename__ = "Instruments"

    InstrumentID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Description = Column(String(2000), nullable=False)
    Category = Column(String(100), nullable=False)
    Location = Column(String(255))
    ManualGuide = Column(String(2000))
    ImagePath = Column(String(500))
    Quantity = Column(Integer, nullable=False, default=0)
    # Hint only; occupancy is always derived from Checkouts.
    AvailableQuantity = Column(Integer, nullable=False, default=0)
    Status = Column(String(20), nullable=False, default="available")
    Specifications = Column(JSON, nullable=False, default=dict)
    TotalUsageMinutes = Column(Integer, nullable=False, default=0)
    UsageCount = Column(Integer, nullable=False, default=0)
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Checkouts = relationship(
        "InstrumentCheckout",
        back_populates="Instrument",
        cascade="all, delete-orphan",
        order_by="InstrumentCheckout.StartedAt",
    )

    __mapper_args__ = {"version_id_col": Version}


class InstrumentCheckout(Base):
    __tablename__ = "InstrumentCheckouts"
    __table_args__ = (
        UniqueConstraint("InstrumentID", "UserID", name="uq_instrument_checkout_user"),
    )

    CheckoutID = Column(Integer, primary_key=True)
    InstrumentID = Column(Integer, ForeignKey("Instruments.InstrumentID"), nullable=False)
    UserID = Column(Integer, nullable=False, index=True)
    StartedAt = Column(DateTime, nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)

    Instrument = relationship("Instrument", back_populates="Checkouts")


class UsageSession(Base):
    __tablename__ = "UsageSessions"
    __table_args__ = (
        Index("ix_usage_sessions_instrument_status", "InstrumentID", "Status"),
        Index("ix_usage_sessions_user_status", "UserID", "Status"),
        Index("ix_usage_sessions_status", "Status"),
    )

    SessionID = Column(Integer, primary_key=True)
    UserID = Column(Integer, nullable=False)
    # No foreign key: history outlives the instrument.
    InstrumentID = Column(Integer, nullable=False)
    StartedAt = Column(DateTime, nullable=False)
    EndedAt = Column(DateTime)
    DurationMinutes = Column(Integer, nullable=False, default=0)
    Quantity = Column(Integer, nullable=False, default=1)
    Status = Column(String(20), nullable=False, default="active")
    Notes = Column(String(1000))
    TerminatedBy = Column(Integer)
    TerminationReason = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())


class LabUser(Base):
    __tablename__ = "LabUsers"

    UserID = Column(Integer, primary_key=True)
    Email = Column(String(255), nullable=False, unique=True)
    Name = Column(String(255), nullable=False)
    Role = Column(String(20), nullable=False, default="user")
    IsActive = Column(Boolean, nullable=False, default=True)
    PasswordHash = Column(String(256))
    PasswordSalt = Column(String(64))
    LastLogin = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
