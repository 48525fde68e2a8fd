"""
crm_contact_sync.sync - Reconciliation module

Contact projection, conflict resolution, the two-pass reconciler, the
mutation appliers, the change log writer and the run orchestrator.
"""
