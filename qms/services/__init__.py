"""Kasah QMS service layer."""
