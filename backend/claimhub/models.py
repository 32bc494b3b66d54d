from sqlalchemy import Column, String, Text, JSON, UniqueConstraint, DateTime
from sqlalchemy.sql import func
from .db import Base

class Account(Base):
    __tablename__ = "users"
    uid = Column(String(64), primary_key=True)
    email = Column(String, unique=True, nullable=True)
    password_hash = Column(Text, nullable=True)
    provider_id = Column(String, nullable=True)  # "google.com", ... for linked accounts
    provider_uid = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (UniqueConstraint("provider_id", "provider_uid", name="uq_provider_link"),)

class Node(Base):
    """One leaf of the hierarchical store, addressed by its slash-separated path."""
    __tablename__ = "nodes"
    path = Column(String, primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
