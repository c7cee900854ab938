"""Collaborators plugged into the sync engine."""
