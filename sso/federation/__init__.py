"""
Sign-in through upstream OpenID providers, linked to local users.
"""
