"""
Merge services from several compose files into a single compose document.

Services are accumulated in request order (a later service with the same name
overwrites an earlier one), then laid over the services of the existing output
file. The first remote file that declares a version decides the version of the
result; the existing file's version is only used when no remote file has one.
"""

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from compose_fetch import ComposeDocument, FetchError, FetchOutcome, get_subsection
from compose_spec import SubsectionRequest

logger = logging.getLogger(__name__)


class MergeError(Exception):
    """Raised when the merged compose document cannot be produced."""


class NoVersionError(MergeError):
    """Raised when neither the fetched files nor the existing file declare a version."""

    def __init__(self):
        super().__init__("No compose file version found in the fetched files or the existing output file")


class ComposeMerger:
    """Accumulates services across fetched compose files."""

    def __init__(self):
        self.version: Optional[str] = None
        self.services: Dict[Any, Any] = {}
        self.skipped: List[Tuple[SubsectionRequest, FetchError]] = []

    def add(self, document: ComposeDocument, names: Iterable[str]) -> List[str]:
        """Take the requested services out of a fetched document.

        Args:
            document: A fetched compose document.
            names: Requested service names, in request order.

        Returns:
            List[str]: Names that were found and merged.
        """
        if self.version is None and document.version:
            self.version = document.version
        merged = []
        for name in names:
            service = get_subsection(document, name)
            if service is None:
                logger.debug(f"Service {name} not found, skipping")
                continue
            self.services[name] = copy.deepcopy(service)
            merged.append(name)
        return merged

    def skip(self, request: SubsectionRequest, error: FetchError) -> None:
        self.skipped.append((request, error))

    def finalize(self, existing: Optional[ComposeDocument] = None) -> ComposeDocument:
        """Build the merged document, laying fetched services over existing ones.

        Args:
            existing: The compose document already at the output path, if any.

        Returns:
            ComposeDocument: The merged document.

        Raises:
            NoVersionError: If no version is known from any source.
        """
        version = self.version or (existing.version if existing is not None else None)
        if not version:
            raise NoVersionError()

        if existing is None:
            return ComposeDocument(version=version, services=copy.deepcopy(self.services))

        # Existing services keep their comments and order; fetched ones replace them in place.
        services: Dict[Any, Any] = copy.deepcopy(existing.services) if existing.services is not None else {}
        for name, service in self.services.items():
            services[name] = copy.deepcopy(service)
        return ComposeDocument(version=version, services=services, extras=copy.deepcopy(existing.extras),
                               source=existing.source)


def merge_documents(outcomes: Iterable[FetchOutcome],
                    existing: Optional[ComposeDocument] = None) -> ComposeDocument:
    """Apply fetch outcomes in order and build the merged document.

    Failed outcomes are skipped. Raises NoVersionError like ComposeMerger.finalize.
    """
    merger = ComposeMerger()
    for outcome in outcomes:
        if outcome.error is not None:
            merger.skip(outcome.request, outcome.error)
            continue
        merger.add(outcome.document, outcome.request.services)
    return merger.finalize(existing)
