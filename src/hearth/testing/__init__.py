"""Test support utilities for the hearth package.

In-memory stand-ins for the store, provider, credentials and mail transport so
the sync controllers can be exercised without PostgreSQL or network access.
All public symbols are free of pytest fixtures and can be imported from any
test context.
"""

from __future__ import annotations

from hearth.testing.fakes import (
    FakeCalendarProvider,
    InMemoryEventStore,
    InMemoryStatePool,
    ProviderCall,
    RecordingEmailTransport,
    StaticCredentialSource,
)

__all__ = [
    "FakeCalendarProvider",
    "InMemoryEventStore",
    "InMemoryStatePool",
    "ProviderCall",
    "RecordingEmailTransport",
    "StaticCredentialSource",
]
