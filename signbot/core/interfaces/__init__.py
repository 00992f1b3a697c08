"""
Core Interfaces Module

Components:
-----------
- **store.py**: DurableStore protocol and its value types
"""

from signbot.core.interfaces.store import DurableStore, RegistrationResult, VersionedState

__all__ = ["DurableStore", "RegistrationResult", "VersionedState"]
