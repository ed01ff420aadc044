"""Niya chat gateway."""
