"""
Shared helpers with no service dependencies.
"""
