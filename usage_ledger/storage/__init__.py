"""
SQLite persistence: schema, repositories and downstream copies.
"""
