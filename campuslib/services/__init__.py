"""Campus Library - Services Package

This package contains service modules for external integrations:
- Identity / role-check service
"""
