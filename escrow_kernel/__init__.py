"""
Escrow Kernel

Infrastructure shared by the escrow release engine:
- SQLAlchemy base classes, engine and session management
- ORM models for deals, milestones, earnings and notifications
- Injectable clock
- Typed exceptions with machine-readable codes
- Structured JSON logging
- Bounded retry for transient I/O
"""

__version__ = "0.1.0"
