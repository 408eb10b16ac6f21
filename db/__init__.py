"""
Database initialization module.

This module contains scripts for:
- System initialization (init_system.py): blob table, users with roles,
  and session tokens for the session auth provider
"""

__version__ = "1.0.0"
