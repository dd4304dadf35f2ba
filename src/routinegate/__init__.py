"""RoutineGate: guarded lifecycle management for database routines.

RoutineGate sits between an automated caller and a PostgreSQL database,
screening every write before it runs and moving stored procedures and
functions through a draft, test, deploy and rollback workflow.

Key features:
    - Admission gate for raw SQL (deny-list and suspicious-pattern checks)
    - Owned transactions with timeout-driven reclamation
    - Versioned routine definitions with retention pruning
    - Atomic deploys that always back up the outgoing definition
    - Buffered, append-only audit log

Example:
    >>> from routinegate.config import load_settings
    >>> from routinegate.service import RoutineGate
    >>> gate = RoutineGate(load_settings())
    >>> await gate.start()
    >>> await gate.create_draft("dbo", "example", "CREATE FUNCTION dbo.example() ...")
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
