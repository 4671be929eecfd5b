"""SQLAlchemy models for institution registrations and pending requests."""

from sqlalchemy import JSON, Column, DateTime, String, Text

from certregistry.database import Base


class Institution(Base):
    """Registered institution, keyed by the lower-cased wallet address."""

    __tablename__ = "institution"

    identity = Column(String(42), primary_key=True)
    profile = Column(JSON, nullable=False)
    storage_id = Column(String(128))
    registered_at = Column(DateTime(timezone=True), nullable=False)


class InstitutionRequest(Base):
    """Registration awaiting admin review."""

    __tablename__ = "institution_request"

    identity = Column(String(42), primary_key=True)
    profile = Column(JSON, nullable=False)
    storage_id = Column(String(128))
    status = Column(String(20), nullable=False)  # pending / approved / rejected
    requested_at = Column(DateTime(timezone=True), nullable=False)
    handled_at = Column(DateTime(timezone=True))
    history = Column(JSON, nullable=False, default=list)
    note = Column(Text)
