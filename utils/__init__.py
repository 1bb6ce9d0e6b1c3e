"""
Shared services for the access backend
"""
