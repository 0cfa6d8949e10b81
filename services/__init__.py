"""
services/ - Business Logic Layer
================================
The billing engine (cycle advancement, reminder policy, per-subscription
processing, batches, scheduling) and the subscription lifecycle service.
"""
