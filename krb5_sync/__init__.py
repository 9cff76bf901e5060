"""
krb5-sync - Propagate Kerberos password and account status changes to Active Directory.

This package is loaded by the Kerberos administration server when a
principal's password or status changes.  Changes are applied to Active
Directory immediately, or queued on disk and replayed later by the queue
backend when Active Directory cannot be updated.
"""

__version__ = "1.0.0"
__author__ = "krb5-sync Team"
