"""
models/ - Domain Layer
======================
Plain dataclasses for subscriptions, outbound payloads and run context.
No I/O lives here.
"""
