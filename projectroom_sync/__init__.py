"""
Project Room Sync - keep project membership and chat rooms in line with an LDAP directory.

This package runs a periodic reconciliation that pulls users and write
privileges from LDAP, updates the locally stored people, and then makes each
project's chat room membership match the locally recorded project members.
"""

__version__ = "1.0.0"
__author__ = "Project Room Sync Team"
