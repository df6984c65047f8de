"""
Imports every ORM model so Base.metadata knows all tables.
"""

from sso.federation.schemas import IdPConnector  # noqa: F401
from sso.idp.schemas import OAuthClient  # noqa: F401
from sso.session.schemas import LocalSession  # noqa: F401
from sso.user.schemas import User  # noqa: F401
