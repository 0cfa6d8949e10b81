"""
utils/ - Cross-cutting helpers
==============================
Logging setup and the structured event sink.
"""
