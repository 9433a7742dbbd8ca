"""Durable storage (SQLAlchemy async)."""
