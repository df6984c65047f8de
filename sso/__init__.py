"""
Single-tenant OAuth2/OpenID Connect identity provider.
"""
