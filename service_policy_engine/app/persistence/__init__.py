"""
Persistence adapters for the policy engine.

- repository: Abstract document/policy store and action sink.
- memory: In-process implementation for local runs and tests.
- postgres: asyncpg implementation against the invoice database.
"""

from .repository import PolicyRepository
from .memory import InMemoryPolicyRepository
from .postgres import PostgresPolicyRepository

__all__ = ["PolicyRepository", "InMemoryPolicyRepository", "PostgresPolicyRepository"]
