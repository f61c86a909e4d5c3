from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.sql import func
from filevault.core.database import Base


class User(Base):
    """
    Account that owns uploaded files.

    Passwords are stored as bcrypt hashes (never plaintext).
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # Login identifier - unique and indexed for lookups during login
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    # Inactive users keep their files but cannot authenticate
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
