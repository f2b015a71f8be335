"""Athlete wearable sync service."""
