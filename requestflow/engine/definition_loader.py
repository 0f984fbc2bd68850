"""Definition Loader - Load, validate and cache workflow graphs"""
import threading
from collections import OrderedDict
from typing import Optional, Tuple

from ..config.settings import settings
from ..domain.models import WorkflowDefinition
from ..domain.errors import DefinitionError
from ..repositories.base import DefinitionSource
from .graph import WorkflowGraph, parse_definition
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DefinitionLoader:
    """
    Wraps a definition source with a bounded LRU of compiled graphs

    Graphs are keyed by (service_key, version). A cached graph is reused only
    while its definition still equals the one presented, so an edit that keeps
    the version string is recompiled rather than served stale.
    """

    def __init__(self, source: DefinitionSource, cache_size: Optional[int] = None):
        self.source = source
        self.cache_size = cache_size if cache_size is not None else settings.definition_cache_size
        self._cache: "OrderedDict[Tuple[str, str], WorkflowGraph]" = OrderedDict()
        self._lock = threading.Lock()

    def load(self, service_key: str) -> WorkflowGraph:
        """
        Load the current graph for a service

        Raises:
            DefinitionError: If the service has no workflow
            WorkflowValidationError: If the stored definition is invalid
        """
        raw = self.source.load_definition(service_key)
        if raw is None:
            raise DefinitionError(
                f"No workflow definition found for service {service_key}",
                details={"service_key": service_key}
            )
        return self.compile(service_key, parse_definition(raw))

    def compile(self, service_key: str, definition: WorkflowDefinition) -> WorkflowGraph:
        """Compile a definition (e.g. a request snapshot), reusing the cache"""
        key = (service_key, definition.version)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and cached.definition == definition:
                self._cache.move_to_end(key)
                return cached

        graph = WorkflowGraph.compile(definition)
        logger.debug(
            f"Compiled workflow {service_key} v{definition.version}",
            extra={"service_key": service_key}
        )

        with self._lock:
            self._cache[key] = graph
            self._cache.move_to_end(key)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return graph

    def snapshot(self, service_key: str) -> WorkflowDefinition:
        """Deep copy of the current definition for attaching to a new request"""
        return self.load(service_key).definition.model_copy(deep=True)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
