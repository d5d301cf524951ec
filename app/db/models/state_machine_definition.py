"""
State Machine Definition Model - conversation flows stored as data
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, UniqueConstraint

from app.db.database import Base, utcnow


class StateMachineDefinition(Base):
    __tablename__ = "state_machine_definitions"
    __table_args__ = (
        UniqueConstraint("name", "version", name="uq_state_machine_name_version"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, default=False, nullable=False, index=True)

    initial_state = Column(String(100), nullable=False, default="initial")
    # {state_name: StateConfig as dict}
    states = Column(JSON, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
