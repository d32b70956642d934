"""SQLAlchemy repository implementations of the core interfaces."""
