"""
Fixed lifetimes, cookie names and token prefixes.
"""

# Token lifetimes are fixed per deployment.
ACCESS_TOKEN_EXPIRY_SECONDS = 30 * 60
REFRESH_TOKEN_EXPIRY_SECONDS = 24 * 60 * 60
ID_TOKEN_EXPIRY_SECONDS = 60 * 60
AUTH_CODE_EXPIRY_SECONDS = 10 * 60

# Local sessions.
SESSION_EXPIRY_SECONDS = 24 * 60 * 60
SESSION_TOKEN_BYTES = 32
SESSION_COOKIE_NAME = "sso_session"

# Federation state binding cookie.
FEDERATION_STATE_COOKIE_NAME = "sso_federation_state"
FEDERATION_STATE_EXPIRY_SECONDS = 10 * 60

# Opaque token prefixes, the random part follows the underscore.
AUTH_CODE_PREFIX = "sac_"
ACCESS_TOKEN_PREFIX = "sat_"
REFRESH_TOKEN_PREFIX = "srt_"
TOKEN_SECRET_BYTES = 32

MIN_PASSWORD_LENGTH = 8

SUPPORTED_SCOPES = ("openid", "profile", "email", "offline_access")
OFFLINE_SCOPES = ("offline_access", "offline")
DEFAULT_CLIENT_SCOPES = ("openid", "profile", "email", "offline_access")
DEFAULT_GRANT_TYPES = ("authorization_code", "refresh_token")
DEFAULT_RESPONSE_TYPES = ("code",)
PKCE_METHODS = ("S256", "plain")

# Claims released per scope.
SCOPE_CLAIMS = {
    "profile": ("preferred_username", "name"),
    "email": ("email",),
}
