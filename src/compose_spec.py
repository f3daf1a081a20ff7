"""
Service spec parsing for compose-scaffold.

A service spec is a compact DSN naming services inside a docker compose file
hosted on GitHub:

    project/repository[+branch]:path/to/docker-compose.yml@service[,service...]

For example ``omnivore-app/omnivore+main:docker-compose.yml@redis,x-postgres``.
"""

from dataclasses import dataclass
from typing import Tuple

DEFAULT_BRANCH = "master"


class SpecError(ValueError):
    """Raised when a service spec cannot be parsed."""


class NoMatchError(SpecError):
    """Raised when the spec does not have the expected shape at all."""

    def __init__(self, spec: str, reason: str):
        self.spec = spec
        self.reason = reason
        super().__init__(f"Doesn't match expected spec format ({reason}): {spec!r}")


class MissingFieldError(SpecError):
    """Raised when the spec has the right shape but a required field is empty."""

    def __init__(self, spec: str, field: str):
        self.spec = spec
        self.field = field
        super().__init__(f"{field} is not specified: {spec!r}")


@dataclass(frozen=True)
class FileLocator:
    """A single file on a GitHub repository branch."""
    project: str
    repository: str
    branch: str
    path: str


@dataclass(frozen=True)
class SubsectionRequest:
    """A file locator plus the services requested from it, in request order."""
    locator: FileLocator
    services: Tuple[str, ...]


def parse_spec(spec: str, default_branch: str = DEFAULT_BRANCH) -> SubsectionRequest:
    """Parse a service spec into a locator and the requested service names.

    Delimiters are taken left to right: the first ``/`` ends the project, the
    first ``:`` after it ends the repository (a ``+`` inside that part starts
    the branch), the first ``@`` after that ends the path, and whatever is left
    is the comma separated service list.

    Args:
        spec: The service spec string. Surrounding whitespace is not stripped.
        default_branch: Branch used when the spec has no ``+branch`` part.

    Returns:
        SubsectionRequest: The parsed locator and service names.

    Raises:
        NoMatchError: If a delimiter is missing or the spec spans several lines.
        MissingFieldError: If project, repository, branch, path or a service
            name is empty.
    """
    if "\n" in spec or "\r" in spec:
        raise NoMatchError(spec, "line break in spec")

    project, slash, rest = spec.partition("/")
    if not slash:
        raise NoMatchError(spec, "missing '/' after project")
    head, colon, rest = rest.partition(":")
    if not colon:
        raise NoMatchError(spec, "missing ':' before path")
    path, at, services_csv = rest.partition("@")
    if not at:
        raise NoMatchError(spec, "missing '@' before services")

    repository, plus, branch = head.partition("+")

    if not project:
        raise MissingFieldError(spec, "project")
    if not repository:
        raise MissingFieldError(spec, "repository")
    if plus and not branch:
        raise MissingFieldError(spec, "branch")
    if not path:
        raise MissingFieldError(spec, "path")

    services = tuple(services_csv.split(","))
    if not all(services):
        raise MissingFieldError(spec, "services")

    locator = FileLocator(
        project=project,
        repository=repository,
        branch=branch if plus else default_branch,
        path=path,
    )
    return SubsectionRequest(locator=locator, services=services)


def format_spec(request: SubsectionRequest, default_branch: str = DEFAULT_BRANCH) -> str:
    """Render a request back into spec form, omitting the default branch."""
    locator = request.locator
    branch = "" if locator.branch == default_branch else f"+{locator.branch}"
    return (f"{locator.project}/{locator.repository}{branch}:{locator.path}"
            f"@{','.join(request.services)}")
