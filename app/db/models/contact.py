"""
Contact Model - the person behind one or more sessions
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, Numeric, UniqueConstraint

from app.db.database import Base, utcnow


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("channel_type", "channel_user_id", name="uq_contacts_channel_user"),
    )

    id = Column(Integer, primary_key=True, index=True)

    channel_type = Column(String(20), nullable=False)
    channel_user_id = Column(String(100), nullable=False)

    # Identity
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    full_name = Column(String(200), nullable=True)
    email = Column(String(200), nullable=True)
    phone = Column(String(30), nullable=True)

    # Profile
    language = Column(String(10), default="es", nullable=False)
    country = Column(String(50), nullable=True)

    # Funnel
    has_registered = Column(Boolean, default=False, nullable=False)
    deposit_confirmed = Column(Boolean, default=False, nullable=False)
    lifetime_value = Column(Numeric(12, 2), default=0, nullable=False)

    # Attribution
    utm_source = Column(String(100), nullable=True)
    utm_campaign = Column(String(100), nullable=True)
    referral_code = Column(String(100), nullable=True)

    # "metadata" is reserved on declarative classes
    extra_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
