"""
Local session ORM model.
"""

import calendar

from sqlalchemy import Column, DateTime, ForeignKey, String

from sso.database import Base, generate_uuid
from sso.user.schemas import utcnow


class LocalSession(Base):
    """
    Browser session bound to a user. The token is a password-equivalent secret
    handed out as a cookie.
    """

    __tablename__ = "sessions"

    session_id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(
        String,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token = Column(String(128), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    @property
    def auth_time(self) -> int:
        """When the user authenticated, as a unix timestamp."""
        return calendar.timegm(self.created_at.timetuple())

    def __repr__(self):
        return f"<LocalSession {self.session_id} user={self.user_id}>"
