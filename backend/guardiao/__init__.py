"""Guardião LGPD API service.

The FastAPI application lives in :mod:`backend.guardiao.app` and the ORM layer
in :mod:`backend.guardiao.db`.
"""
