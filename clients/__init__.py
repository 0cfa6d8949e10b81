"""
clients/ - Outbound Service Layer
=================================
HTTP clients for the external expense and notification services.
Each client translates transport failures into the engine's error types.
"""
