"""
Infrastructure layer - Cross-cutting runtime concerns.

This layer contains:
- The side-effect task queue
- Background task management (periodic expiry sweep)
"""
