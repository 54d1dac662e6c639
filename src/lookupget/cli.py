"""Command-line entry points.

``lookupget`` simulates a batch of lookups against a lookup service and
prints one result payload per line. Switches are case-insensitive, may be
abbreviated to their first letter and reordered; values given without a
switch fill the remaining switches in order (url, port, authorization,
requests, limit)::

    lookupget -Url http://localhost/items/ -p 8080 -a TOKEN -r 100 -l 5
    lookupget http://localhost/items/ 8080 TOKEN

``lookupget-server`` runs the rate-limited lookup service under uvicorn.
"""

from __future__ import annotations

import argparse
import logging
import os
import random
import string
import sys
from typing import Optional, Sequence

import uvicorn
from pydantic import ValidationError

from lookupget.batch import LookupBatch
from lookupget.config import (
    DEFAULT_BASE_URL,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_PORT,
    DEFAULT_REQUEST_COUNT,
    ClientConfig,
    ServerConfig,
    load_environment,
)
from lookupget.log import setup_logging
from lookupget.schemas import BatchRequest
from lookupget.server import create_app

logger = logging.getLogger(__name__)

IDENTIFIER_ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase
IDENTIFIER_LENGTH = 32

SWITCH_ORDER = ("url", "port", "authorization", "requests", "limit")
SWITCH_LETTERS = {name[0]: name for name in SWITCH_ORDER + ("help",)}

USAGE = """\
lookupget -Url <url> [-Port port] [-Authorization token] [-Requests count] [-Limit limit]

Items enclosed in <> are required, for example <url> = {url}. Items enclosed in [] are optional.
If optional switches are not provided the following defaults are used:
    [port]:   {port}
    [token]:  $LOOKUP_AUTHORIZATION or empty
    [count]:  {count}
    [limit]:  {limit}

Notes:
  Switches may be abbreviated using the first letter of the switch.
  Switches may be any combination of upper case and lower case letters.
  Switches may be omitted and the value will be determined positionally.
  Switches may be reordered and any value without a switch will be used to
  fulfill a remaining positional value.
""".format(
    url=DEFAULT_BASE_URL,
    port=DEFAULT_PORT,
    count=DEFAULT_REQUEST_COUNT,
    limit=DEFAULT_MAX_CONCURRENCY,
)


class CliError(ValueError):
    """Invalid command-line input."""


def normalize_switches(argv: Sequence[str]) -> list[str]:
    """Rewrite ``-Url``/``-u``/``-URL`` style switches to ``--url``."""

    normalized: list[str] = []
    seen: set[str] = set()
    for arg in argv:
        if arg.startswith("--log-level"):
            normalized.append(arg)
            continue
        if len(arg) < 2 or not arg.startswith("-"):
            normalized.append(arg)
            continue
        letter = arg.lstrip("-")[:1].lower()
        name = SWITCH_LETTERS.get(letter)
        if name is None or name in seen:
            raise CliError(
                f"Invalid or already used switch character: [-{letter}] or positional value. "
                "If using positional values make sure they are in the right order."
            )
        seen.add(name)
        normalized.append(f"--{name}")
    return normalized


def _counting(raw: str, switch: str, upper: Optional[int] = None) -> int:
    try:
        number = int(raw, 10)
    except ValueError as exc:
        raise CliError(f"The value for switch: [-{switch}] could not be converted to a number.") from exc
    if number <= 0 or (upper is not None and number > upper):
        if upper is not None:
            raise CliError(
                f"The value for switch: [-{switch}] was not a valid positive number between 1 and {upper}."
            )
        raise CliError(f"The value for switch: [-{switch}] was not a valid non-zero positive number.")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lookupget", add_help=False, allow_abbrev=False)
    for name in SWITCH_ORDER:
        parser.add_argument(f"--{name}", default=None)
    parser.add_argument("--help", action="store_true")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    parser.add_argument("values", nargs="*")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    raw = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_intermixed_args(normalize_switches(raw))

    remaining = [name for name in SWITCH_ORDER if getattr(args, name) is None]
    for value in args.values:
        if not remaining:
            raise CliError(f"Positional argument [{value}] was unexpected.")
        setattr(args, remaining.pop(0), value)

    if args.help:
        return args
    if args.url is None:
        raise CliError("A url is required. Use -h for usage.")

    args.port = DEFAULT_PORT if args.port is None else _counting(args.port, "p", upper=65535)
    args.requests = DEFAULT_REQUEST_COUNT if args.requests is None else _counting(args.requests, "r")
    args.limit = DEFAULT_MAX_CONCURRENCY if args.limit is None else _counting(args.limit, "l")
    if args.authorization is None:
        args.authorization = os.environ.get("LOOKUP_AUTHORIZATION", "")
    return args


def random_identifier(rng: random.Random) -> str:
    alphabet = list(IDENTIFIER_ALPHABET)
    rng.shuffle(alphabet)
    return "".join(alphabet[:IDENTIFIER_LENGTH])


def simulate_identifiers(count: int, rng: Optional[random.Random] = None) -> list[str]:
    """Random identifiers with adjacent and far-apart duplicates.

    Every identifier appears twice in a row, and the whole sequence is then
    repeated, so each distinct identifier is queued four times.
    """

    rng = rng or random.Random()
    batch: list[str] = []
    for _ in range(count):
        identifier = random_identifier(rng)
        batch.extend((identifier, identifier))
    return batch + batch


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_environment()
    try:
        args = parse_args(argv)
    except CliError as exc:
        print(f"ERROR {exc}", file=sys.stderr)
        return 1

    if args.help:
        print(USAGE)
        return 0

    try:
        request = BatchRequest(
            base_url=args.url,
            port=args.port,
            authorization_token=args.authorization,
            max_concurrency=args.limit,
        )
    except ValidationError as exc:
        print(f"ERROR {exc}", file=sys.stderr)
        return 1

    setup_logging(args.log_level)
    logger.info(
        "lookupget -Url %s -Port %d -Requests %d -Limit %d",
        request.base_url,
        request.port,
        args.requests,
        request.max_concurrency,
    )

    identifiers = simulate_identifiers(args.requests)
    batch = LookupBatch(request, client_config=ClientConfig.from_env())
    results = batch.run(identifiers)
    for result in results.values():
        print(result.payload)

    missing = batch.unresolved(identifiers)
    if missing:
        logger.warning("%d identifiers finished without a result", len(missing))
    return 0


def parse_server_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="lookupget-server",
        description="Lookup service limited to a fixed number of in-flight requests.",
    )
    parser.add_argument("-p", "--port", type=int, default=DEFAULT_PORT, help="TCP port to listen on.")
    parser.add_argument("-r", "--route", default="/items/", help="Top level route to serve.")
    parser.add_argument(
        "-a",
        "--authorization",
        required=True,
        help="Token expected verbatim in the Authorization header.",
    )
    parser.add_argument(
        "-t", "--time", type=int, default=0, help="Processing time per request in milliseconds."
    )
    parser.add_argument("--max-inflight", type=int, default=5, help="Concurrent requests before 429.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    return parser.parse_args(argv)


def serve(argv: Optional[Sequence[str]] = None) -> int:
    load_environment()
    args = parse_server_args(argv)
    setup_logging(args.log_level)
    try:
        config = ServerConfig(
            authorization_token=args.authorization,
            route=args.route,
            processing_time_ms=args.time,
            max_inflight=args.max_inflight,
        )
    except ValueError as exc:
        print(f"ERROR {exc}", file=sys.stderr)
        return 1

    logger.info(
        "lookup-server listening for /%s/:id on port %d with processing time %dms",
        config.route,
        args.port,
        config.processing_time_ms,
    )
    uvicorn.run(create_app(config), host=args.host, port=args.port, log_level=str(args.log_level).lower())
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
