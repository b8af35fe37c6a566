"""
Webhooks module - inbound payment callbacks and the recent-webhook audit log.
"""
