"""
Application version information.

Version format: MAJOR.MINOR
- MAJOR: Breaking changes (0 while the settlement rules are still moving)
- MINOR: Incremented with each merged PR

Version is displayed on server startup and in GET / endpoint.
"""

__version__ = "0.3"
