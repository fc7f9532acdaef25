"""Infrastructure layer: SQL persistence, replica stores and the replication cache.

Implements the application interfaces (DataService) over SQLAlchemy.
"""
