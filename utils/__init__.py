# utils/__init__.py
"""Shared infrastructure helpers (database engine, configuration)"""
