"""Domain services: event processing, sync workflows, dead-letter recovery,
sync status queries, account deletion checks, and billing.
"""
