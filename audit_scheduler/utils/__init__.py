"""
Shared utilities: logging setup and the error taxonomy.
"""
