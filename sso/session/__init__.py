"""
Local login sessions and credential verification.
"""
