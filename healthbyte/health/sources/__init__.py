"""Health data sources for HealthByte.

Available sources:
    InMemoryHealthSource — in-process sample store with grants and observers
    apple_health         — Apple Health export.xml importer feeding the store
"""

from healthbyte.health.sources.memory import InMemoryHealthSource, sample_key

__all__ = [
    "InMemoryHealthSource",
    "sample_key",
]
