"""Zonewatch backend: FastAPI surface and logging setup."""
