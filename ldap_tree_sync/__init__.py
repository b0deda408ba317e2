"""
LDAP Tree Sync - Make one LDAP directory tree match another.

This package reads a source and a target directory, computes the additions
and replacements needed to bring the target in line with the source, and
either prints them as LDIF or applies them. Nothing is ever deleted from the
target.
"""

__version__ = "1.0.0"
__author__ = "LDAP Tree Sync Team"
