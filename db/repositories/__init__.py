"""Repository layer for the identity sync backend.

Provides CRUD, upsert, and query methods per table group:
- users: get_by_external_id, upsert (role preserved, metadata merged),
         delete_by_external_id
- organizations: get_by_external_id, upsert, reconcile_domains,
                 set_domain_status, delete_by_external_id
- memberships: upsert, delete_membership, list_for_user, list_for_organization
- roles: upsert, delete_by_slug, list_roles (environment role cache)
- subscriptions: get_for_organization, upsert, Stripe customers,
                 webhook idempotency
- sync_status: create, mark_complete, list_recent, list_for_entity, get_counts
- dead_letter: create, get_by_id, list_items, mark_retried, resolve
- events: processed-event idempotency, events cursor
- warehouse: secondary store upserts and deletes
"""
