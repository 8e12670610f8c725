"""
Guest Sync - Keep directory guest group memberships in line with source-system group assignments.

This package reconciles group membership in an identity directory (Microsoft Entra ID
via Microsoft Graph) against the group assignments reported by a source
user-management system (Qlik Cloud).
"""

__version__ = "1.0.0"
__author__ = "Guest Sync Team"
