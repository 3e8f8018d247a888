"""
Directory Sync Module.

Reconciles organizations, users and memberships between sources and a target directory.
"""
