"""Roomcast backend application package."""
