"""
Local user accounts: registration, lookup and deletion.
"""
