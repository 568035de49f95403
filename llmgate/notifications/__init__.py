"""Notification sinks for quota events."""
