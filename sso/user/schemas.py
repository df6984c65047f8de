"""
User ORM model and registration request.
"""

import re
from datetime import datetime, timezone

from pydantic import BaseModel, field_validator
from sqlalchemy import Column, DateTime, String, UniqueConstraint

from sso.database import Base, generate_uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """A local identity. Federation-only users carry an unusable password digest."""

    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("connector_id", "upstream_subject", name="uq_user_upstream"),)

    user_id = Column(String, primary_key=True, default=generate_uuid)
    username = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(320), nullable=True, index=True)
    password_hash = Column(String, nullable=False)
    # Set for users minted by a federated login; local users leave both NULL.
    connector_id = Column(String, nullable=True)
    upstream_subject = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<User {self.user_id} {self.username!r}>"


class RegisterArgs(BaseModel):
    """Registration form."""

    username: str
    email: str
    password: str

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        v = v.strip()
        if not v or len(v) > 64:
            raise ValueError("Username must be between 1 and 64 characters")
        if not re.match(r"^[\w\-\.@+]+$", v):
            raise ValueError("Username can only contain letters, numbers, and -_.@+")
        return v

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        v = v.strip()
        if not re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", v):
            raise ValueError("Invalid email address")
        return v
