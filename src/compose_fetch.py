"""
Fetching and decoding of docker compose files for compose-scaffold.

Files are downloaded through a transport (``HttpTransport`` by default) from
raw.githubusercontent.com and decoded with ruamel.yaml in round-trip mode into
``ComposeDocument``. Round-trip nodes keep comments, quoting and key order, so
content the merge does not touch is written back as it was read.
"""

import copy
import io
import logging
import os
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol

import requests
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap
from ruamel.yaml.error import YAMLError
from ruamel.yaml.scalarbool import ScalarBoolean
from ruamel.yaml.scalarstring import PlainScalarString

from compose_spec import FileLocator, SubsectionRequest

RAW_GITHUB_URL = "https://raw.githubusercontent.com"
DEFAULT_TIMEOUT = 10.0
DEFAULT_USER_AGENT = "compose-scaffold"

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Raised when a compose file cannot be fetched or decoded."""


class TransportError(FetchError):
    """Raised by a transport when the bytes of a file cannot be retrieved."""


class DecodeError(FetchError):
    """Raised when fetched bytes are not a valid compose document."""


@dataclass(frozen=True)
class ComposeDocument:
    """Decoded compose file: version, services and any other top-level keys.

    ``source`` is the round-trip root mapping the document was decoded from.
    It only carries layout (comments, key order) for encoding and takes no
    part in equality.
    """
    version: Optional[str] = None
    services: Optional[Dict[Any, Any]] = None
    extras: Dict[Any, Any] = field(default_factory=dict)
    source: Optional[CommentedMap] = field(default=None, compare=False, repr=False)


class Transport(Protocol):
    def fetch_bytes(self, address: str) -> bytes:
        ...


class HttpTransport:
    """Fetches raw file bytes over HTTP.

    Each thread gets its own requests session, so one transport can be shared
    by the ``fetch_all`` worker pool. An injected ``session`` is used as is by
    every thread.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, user_agent: str = DEFAULT_USER_AGENT,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.user_agent = user_agent
        self.session = session
        if session is not None:
            session.headers.update({"User-Agent": user_agent})
        self._local = threading.local()
        self._lock = threading.Lock()
        self._sessions: List[requests.Session] = []

    def _thread_session(self) -> requests.Session:
        if self.session is not None:
            return self.session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": self.user_agent})
            self._local.session = session
            with self._lock:
                self._sessions.append(session)
        return session

    def fetch_bytes(self, address: str) -> bytes:
        """Download the body at an address.

        Args:
            address: URL to download.

        Returns:
            bytes: The response body.

        Raises:
            TransportError: On connection errors, timeouts or a non-2xx status.
        """
        try:
            response = self._thread_session().get(address, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"Failed to download {address}: {e}") from e
        return response.content

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
        with self._lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()

    def __enter__(self) -> "HttpTransport":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def resolve_address(locator: FileLocator, base_url: str = RAW_GITHUB_URL) -> str:
    """Build the raw download URL of a located file."""
    return (f"{base_url.rstrip('/')}/{locator.project}/{locator.repository}"
            f"/refs/heads/{locator.branch}/{locator.path}")


def _round_trip_yaml() -> YAML:
    # YAML instances are not thread-safe; fetch_all decodes in worker threads.
    yaml = YAML(typ="rt")
    yaml.preserve_quotes = True
    yaml.indent(mapping=2, sequence=4, offset=2)
    yaml.width = 4096
    return yaml


def _decode_version(root: CommentedMap, text: str) -> Optional[str]:
    """Read the version scalar, keeping numbers as written (``3.10`` stays ``3.10``)."""
    value = root.get("version")
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (bool, ScalarBoolean)) or not isinstance(value, (int, float)):
        raise DecodeError(f"Invalid compose version: {value!r}")
    line, column = root.lc.value("version")
    raw = text.splitlines()[line][column:]
    return PlainScalarString(re.match(r"[^\s,}#]+", raw).group(0))


def decode_document(data: bytes) -> ComposeDocument:
    """Decode YAML bytes into a compose document.

    Args:
        data: Raw YAML file content.

    Returns:
        ComposeDocument: The decoded document. Empty input gives an empty document.

    Raises:
        DecodeError: If the YAML is malformed, the top level is not a mapping,
            ``services`` is not a mapping or ``version`` is not a scalar.
    """
    try:
        text = data.decode("utf-8-sig")
        loaded = _round_trip_yaml().load(text)
    except (UnicodeDecodeError, YAMLError) as e:
        raise DecodeError(f"Malformed YAML: {e}") from e
    if loaded is None:
        return ComposeDocument()
    if not isinstance(loaded, dict):
        raise DecodeError(f"Expected a mapping at the top level, got {type(loaded).__name__}")

    services = loaded.get("services")
    if services is not None and not isinstance(services, dict):
        raise DecodeError(f"Expected 'services' to be a mapping, got {type(services).__name__}")
    extras = {key: value for key, value in loaded.items() if key not in ("version", "services")}
    return ComposeDocument(
        version=_decode_version(loaded, text),
        services=services,
        extras=extras,
        source=loaded,
    )


def _set_key(contents: CommentedMap, key: str, value: Any, position: int) -> None:
    if value is None:
        contents.pop(key, None)
    elif key in contents:
        contents[key] = value
    else:
        contents.insert(min(position, len(contents)), key, value)


def encode_document(document: ComposeDocument) -> bytes:
    """Encode a compose document as YAML.

    A document decoded from a file is written over a copy of its source
    mapping: ``version`` and ``services`` are replaced in place and everything
    else keeps its comments, quoting and order. New keys go first, ``version``
    then ``services``.
    """
    if document.source is not None:
        contents = copy.deepcopy(document.source)
    else:
        contents = CommentedMap()
    _set_key(contents, "version", document.version, 0)
    _set_key(contents, "services", document.services, 1 if "version" in contents else 0)
    for key, value in document.extras.items():
        if key not in contents:
            contents[key] = value
    stream = io.StringIO()
    _round_trip_yaml().dump(contents, stream)
    return stream.getvalue().encode("utf-8")


def fetch_document(locator: FileLocator, transport: Transport,
                   base_url: str = RAW_GITHUB_URL) -> ComposeDocument:
    """Download and decode the compose file a locator points at.

    Raises:
        TransportError: If the transport fails.
        DecodeError: If the downloaded file is not a compose document.
    """
    address = resolve_address(locator, base_url)
    logger.debug(f"Fetching compose file from {address}")
    return decode_document(transport.fetch_bytes(address))


def get_subsection(document: ComposeDocument, name: str) -> Optional[Dict[Any, Any]]:
    """Look up a service by name, skipping entries that are not mappings."""
    if document.services is None:
        return None
    service = document.services.get(name)
    if not isinstance(service, dict):
        return None
    return service


@dataclass
class FetchOutcome:
    """Result of fetching the file behind one request."""
    request: SubsectionRequest
    document: Optional[ComposeDocument] = None
    error: Optional[FetchError] = None


def _fetch_outcome(request: SubsectionRequest, transport: Transport, base_url: str) -> FetchOutcome:
    try:
        return FetchOutcome(request, document=fetch_document(request.locator, transport, base_url))
    except FetchError as e:
        return FetchOutcome(request, error=e)


def fetch_all(subsection_requests: Iterable[SubsectionRequest], transport: Transport, jobs: int = 1,
              base_url: str = RAW_GITHUB_URL) -> List[FetchOutcome]:
    """Fetch the files of several requests.

    With ``jobs > 1`` downloads run in a thread pool, so the transport must be
    safe to call from several threads (``HttpTransport`` keeps one session per
    thread). Outcomes are always returned in request order.

    Args:
        subsection_requests: Requests in declaration order.
        transport: Transport shared by all downloads.
        jobs: Number of concurrent downloads.
        base_url: Base URL the locators are resolved against.

    Returns:
        List[FetchOutcome]: One outcome per request, in the given order.
    """
    pending = list(subsection_requests)
    if jobs <= 1 or len(pending) <= 1:
        return [_fetch_outcome(request, transport, base_url) for request in pending]
    with ThreadPoolExecutor(max_workers=min(jobs, len(pending))) as executor:
        return list(executor.map(lambda request: _fetch_outcome(request, transport, base_url), pending))


def load_document(path: str) -> Optional[ComposeDocument]:
    """Load an existing compose file from disk.

    Returns:
        Optional[ComposeDocument]: The decoded document, or None if the file does not exist.

    Raises:
        DecodeError: If the file exists but is not a compose document.
        OSError: If the path exists but cannot be read, e.g. it is a directory.
    """
    if not os.path.exists(path):
        return None
    with open(path, "rb") as f:
        return decode_document(f.read())
