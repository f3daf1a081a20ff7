#!/usr/bin/env python3
"""
compose-scaffold: Scaffold docker compose files from services on GitHub.

Each positional argument is a service spec (a DSN naming services in a docker
compose file on some GitHub repository). The named services are downloaded,
merged in order and written into the output compose file. Services already in
the output file are kept unless a fetched service has the same name.

Exit codes: 0 on success, 1 when no document could be produced, 2 on usage
errors, 3 when the document was written but some specs failed to fetch.
"""

import argparse
import configparser
import logging
import os
import sys
from dataclasses import dataclass, replace
from typing import List, Optional

from compose_fetch import (RAW_GITHUB_URL, DEFAULT_TIMEOUT, DEFAULT_USER_AGENT, DecodeError,
                           HttpTransport, Transport, encode_document, fetch_all, load_document)
from compose_spec import DEFAULT_BRANCH, SpecError, SubsectionRequest, format_spec, parse_spec
from merge_config import ComposeMerger, MergeError

CONFIG_FILE_NAME = "compose-scaffold.conf"
CONFIG_ENV_VAR = "COMPOSE_SCAFFOLD_CONFIG"
DEFAULT_OUTPUT = "./docker-compose.yml"

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 3


class ConfigError(ValueError):
    """Raised when the configuration file holds invalid values."""


@dataclass
class ScaffoldConfig:
    """Configuration settings for compose-scaffold."""
    output: str = DEFAULT_OUTPUT
    default_branch: str = DEFAULT_BRANCH
    jobs: int = 1
    base_url: str = RAW_GITHUB_URL
    timeout: float = DEFAULT_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT
    log_level: str = "INFO"
    log_dir: str = ""
    log_file: str = ""


def default_config() -> ScaffoldConfig:
    return ScaffoldConfig()


def validate_config(config: ScaffoldConfig) -> ScaffoldConfig:
    """Check option values that configparser cannot check by type alone.

    Raises:
        ConfigError: If an option holds an invalid value.
    """
    if config.jobs < 1:
        raise ConfigError(f"jobs must be at least 1, got {config.jobs}")
    if config.timeout <= 0:
        raise ConfigError(f"timeout must be positive, got {config.timeout}")
    if not config.default_branch:
        raise ConfigError("default_branch must not be empty")
    if not config.output:
        raise ConfigError("output must not be empty")
    return config


def load_config(config_path: str) -> ScaffoldConfig:
    """Load configuration from a directory holding compose-scaffold.conf.

    Args:
        config_path: Path to the configuration directory.

    Returns:
        ScaffoldConfig: Parsed configuration object.

    Raises:
        FileNotFoundError: If the config file is missing or unreadable.
        ConfigError: If configuration options are invalid.
    """
    config_parser = configparser.ConfigParser()
    config_file_path = os.path.join(config_path, CONFIG_FILE_NAME)
    if not config_parser.read(config_file_path):
        raise FileNotFoundError(f"Configuration file {config_file_path} not found or unreadable")
    defaults = default_config()
    try:
        config = ScaffoldConfig(
            output=config_parser.get('scaffold', 'output', fallback=defaults.output),
            default_branch=config_parser.get('scaffold', 'default_branch', fallback=defaults.default_branch),
            jobs=config_parser.getint('scaffold', 'jobs', fallback=defaults.jobs),
            base_url=config_parser.get('http', 'base_url', fallback=defaults.base_url),
            timeout=config_parser.getfloat('http', 'timeout', fallback=defaults.timeout),
            user_agent=config_parser.get('http', 'user_agent', fallback=defaults.user_agent),
            log_level=config_parser.get('logging', 'log_level', fallback=defaults.log_level),
            log_dir=config_parser.get('logging', 'log_dir', fallback=defaults.log_dir),
            log_file=config_parser.get('logging', 'log_file', fallback=defaults.log_file),
        )
    except ValueError as e:
        raise ConfigError(f"Invalid option in {config_file_path}: {e}") from e
    return validate_config(config)


def setup_logging(scaffold_config: ScaffoldConfig) -> logging.Logger:
    """Set up logging to stderr and, when configured, to a file.

    Handlers are installed on the package loggers so that messages from the
    fetch and merge modules end up in the same place.

    Args:
        scaffold_config: Configuration object containing log settings.

    Returns:
        logging.Logger: Configured logger instance.
    """
    level = getattr(logging, scaffold_config.log_level.upper(), logging.INFO)
    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s')
    handlers: List[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)
    if scaffold_config.log_dir and scaffold_config.log_file:
        log_file_path = os.path.join(os.path.abspath(scaffold_config.log_dir), scaffold_config.log_file)
        file_handler = logging.FileHandler(log_file_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    for name in ("compose_fetch", "merge_config"):
        module_logger = logging.getLogger(name)
        module_logger.setLevel(level)
        module_logger.handlers = list(handlers)
        module_logger.propagate = False
    scaffold_logger = logging.getLogger(__name__)
    scaffold_logger.setLevel(level)
    scaffold_logger.handlers = list(handlers)  # Clear existing handlers
    scaffold_logger.propagate = False
    return scaffold_logger


def log(scaffold_logger: logging.Logger, message: str, level: str = "INFO") -> None:
    """Log a message at the specified level name (e.g., INFO, ERROR)."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    if scaffold_logger.isEnabledFor(log_level):
        scaffold_logger.log(log_level, message)


def build_parser(scaffold_config: ScaffoldConfig) -> argparse.ArgumentParser:
    """Build the command line parser; config values become option defaults."""
    parser = argparse.ArgumentParser(
        prog="compose-scaffold",
        description="Scaffold docker compose files by composing them across various compose "
                    "files over Github repositories.",
    )
    parser.add_argument(
        "services",
        metavar="SERVICE",
        nargs="+",
        help="A compose service spec, e.g. omnivore-app/omnivore+main:docker-compose.yml@redis,x-postgres",
    )
    parser.add_argument(
        "-o", "--output",
        default=scaffold_config.output,
        help="The path to the docker-compose file to merge the services into.",
    )
    parser.add_argument(
        "-c", "--config",
        help=f"Directory containing {CONFIG_FILE_NAME} (default: ${CONFIG_ENV_VAR}).",
    )
    parser.add_argument(
        "-j", "--jobs",
        type=int,
        default=scaffold_config.jobs,
        help="Number of compose files to download concurrently.",
    )
    parser.add_argument("--base-url", default=scaffold_config.base_url,
                        help="Base URL raw files are downloaded from.")
    parser.add_argument("--timeout", type=float, default=scaffold_config.timeout,
                        help="HTTP timeout in seconds.")
    parser.add_argument("--log-level", default=scaffold_config.log_level,
                        help="Log level (DEBUG, INFO, WARNING, ERROR).")
    parser.add_argument("--dry-run", action="store_true",
                        help="Print the merged compose file instead of writing it.")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse the command line, reading the config file named by --config first.

    Invalid specs and an invalid config end the process with a usage error.
    """
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("-c", "--config")
    known, _ = pre_parser.parse_known_args(argv)
    config_path = known.config or os.environ.get(CONFIG_ENV_VAR)

    scaffold_config = default_config()
    parser = build_parser(scaffold_config)
    if config_path:
        try:
            scaffold_config = load_config(config_path)
        except (FileNotFoundError, ConfigError) as e:
            parser.error(str(e))
        parser = build_parser(scaffold_config)

    args = parser.parse_args(argv)
    try:
        args.scaffold_config = validate_config(replace(
            scaffold_config,
            output=args.output,
            jobs=args.jobs,
            base_url=args.base_url,
            timeout=args.timeout,
            log_level=args.log_level,
        ))
    except ConfigError as e:
        parser.error(str(e))
    parsed_requests: List[SubsectionRequest] = []
    for spec in args.services:
        try:
            parsed_requests.append(parse_spec(spec, scaffold_config.default_branch))
        except SpecError as e:
            parser.error(f"argument SERVICE: {e}")
    args.requests = parsed_requests
    return args


def scaffold(subsection_requests: List[SubsectionRequest], scaffold_config: ScaffoldConfig,
             transport: Transport, scaffold_logger: logging.Logger, dry_run: bool = False) -> int:
    """Fetch, merge and write the requested services.

    Args:
        subsection_requests: Parsed specs in command line order.
        scaffold_config: Configuration object.
        transport: Transport used for downloads.
        scaffold_logger: Logger instance.
        dry_run: Print the result to stdout instead of writing the output file.

    Returns:
        int: Process exit code.
    """
    try:
        existing = load_document(scaffold_config.output)
    except (DecodeError, OSError) as e:
        log(scaffold_logger, f"Failed to read existing compose file {scaffold_config.output}: {e}", "ERROR")
        return EXIT_FATAL

    merger = ComposeMerger()
    outcomes = fetch_all(subsection_requests, transport, jobs=scaffold_config.jobs,
                         base_url=scaffold_config.base_url)
    for outcome in outcomes:
        spec = format_spec(outcome.request, scaffold_config.default_branch)
        if outcome.error is not None:
            log(scaffold_logger, f"failed to download compose file from spec {spec}: {outcome.error}", "ERROR")
            merger.skip(outcome.request, outcome.error)
            continue
        merged = merger.add(outcome.document, outcome.request.services)
        log(scaffold_logger, f"Merged services {merged} from {spec}", "INFO")

    try:
        document = merger.finalize(existing)
    except MergeError as e:
        log(scaffold_logger, str(e), "ERROR")
        return EXIT_FATAL

    serialized = encode_document(document)
    if dry_run:
        sys.stdout.write(serialized.decode("utf-8"))
    else:
        try:
            with open(scaffold_config.output, "wb") as f:
                f.write(serialized)
        except OSError as e:
            log(scaffold_logger, f"Failed to write compose file {scaffold_config.output}: {e}", "ERROR")
            return EXIT_FATAL
        log(scaffold_logger, f"Wrote {len(document.services)} services to {scaffold_config.output}", "INFO")

    if merger.skipped:
        log(scaffold_logger, f"{len(merger.skipped)} of {len(subsection_requests)} specs failed to download",
            "WARNING")
        return EXIT_PARTIAL
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    scaffold_config = args.scaffold_config
    scaffold_logger = setup_logging(scaffold_config)
    with HttpTransport(timeout=scaffold_config.timeout, user_agent=scaffold_config.user_agent) as transport:
        return scaffold(args.requests, scaffold_config, transport, scaffold_logger, dry_run=args.dry_run)


if __name__ == "__main__":
    sys.exit(main())
