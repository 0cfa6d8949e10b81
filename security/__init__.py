"""
security/ - Handler guards
==========================
Whitelist authentication and rate limiting for bot commands.
"""
