"""
Domain layer - Business logic and domain models.

This layer contains:
- Value objects (immutable, self-validating)
- Domain entities (with business rules) and domain errors
- The fee calculator (pure functions, no I/O)
- The order item state machine
- The closed notification registry

No dependencies on infrastructure or frameworks.
"""
