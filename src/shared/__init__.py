"""
Shared Kernel Module
====================

This module contains shared infrastructure used by the escalation bounded
context and the HTTP application around it.

Architecture Pattern: Modular Monolith
- Each module (escalation) is a bounded context
- Shared kernel contains only generic infrastructure (logging, middleware)
- Domain models live within each module

DO NOT add ticket or escalation business logic to the shared kernel.
"""

__version__ = "1.0.0"
