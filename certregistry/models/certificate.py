"""SQLAlchemy models for the certificate index and the orphaned upload log."""

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text, func

from certregistry.database import Base


class CertificateEntry(Base):
    """One issued certificate, written only after the ledger confirmed it."""

    __tablename__ = "certificate_index"

    normalized_id = Column(String(255), primary_key=True)
    certificate_id = Column(String(255), nullable=False)  # as submitted, ledger key
    content_hash = Column(String(64), unique=True, nullable=False)
    storage_id = Column(String(128), nullable=False)
    issuer = Column(String(42), nullable=False)
    issue_timestamp = Column(BigInteger, nullable=False)  # ledger issueDate, seconds
    file_path = Column(Text, nullable=False)
    tx_hash = Column(String(66))
    indexed_at = Column(DateTime(timezone=True), server_default=func.now())


class OrphanedUpload(Base):
    """A blob pinned to the store whose issuance did not complete."""

    __tablename__ = "orphaned_upload"

    id = Column(Integer, primary_key=True, autoincrement=True)
    storage_id = Column(String(128), nullable=False, index=True)
    certificate_id = Column(String(255))
    normalized_id = Column(String(255))
    reason = Column(Text, nullable=False)
    tx_hash = Column(String(66))
    recorded_at = Column(DateTime(timezone=True), server_default=func.now())
    resolved_at = Column(DateTime(timezone=True))
    resolution = Column(String(30))  # indexed / already-indexed
