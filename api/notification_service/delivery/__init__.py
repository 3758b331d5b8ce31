"""Delivery engine and the notification state machine."""
