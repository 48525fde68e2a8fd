"""
crm_contact_sync - Two-way contact reconciliation between a CRM and Google Contacts.

Keeps a CRM's local contact store and a Google Contacts account consistent
through batch, pull-based reconciliation runs.
"""

__version__ = "0.1.0"
