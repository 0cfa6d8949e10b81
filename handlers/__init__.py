"""
handlers/ - Presentation Layer
================================
Telegram bot handlers. Each handler receives updates from Telegram,
delegates to the SubscriptionService found in ``bot_data``, and sends
the response back to the user. No business logic lives here.
"""
