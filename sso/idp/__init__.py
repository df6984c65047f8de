"""
OAuth2/OpenID Connect provider: client registry, grant/token store and the
protocol engine that drives authorize, token, introspection and revocation.
"""
