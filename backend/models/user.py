"""User model definitions."""

from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, func
from backend.database import Base


class Role(str, Enum):
    user = "user"
    admin = "admin"


class User(Base):
    """Represents an application user."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password = Column(String(255), nullable=False)  # salted hash
    role = Column(String(20), nullable=False, default=Role.user.value)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin.value
