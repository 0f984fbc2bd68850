"""Repository modules - Store interfaces and implementations"""
from .base import (
    DefinitionSource, StepHistoryStore, DirectoryStore, SlaConfigStore, RequestStore
)
from .memory import InMemoryStore

__all__ = [
    "DefinitionSource",
    "StepHistoryStore",
    "DirectoryStore",
    "SlaConfigStore",
    "RequestStore",
    "InMemoryStore",
]
