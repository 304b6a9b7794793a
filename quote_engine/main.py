"""Application entry point.

Command line interface that reads calculation requests from a JSON file,
runs them through the quote engine and prints the results as JSON. Owns the
lifecycle of the rate cache: construction, periodic sweeping and shutdown.

Usage:
    quote-engine calculate request.json
    quote-engine calculate batch.json --batch --stats
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .core.container import Container
from .exceptions import ConfigurationError
from .models import CalculationRequest

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="quote-engine", description="Landed-cost quote calculator")
    parser.add_argument("--config-dir", type=Path, default=None, help="Directory holding the YAML data tables")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")

    subparsers = parser.add_subparsers(dest="command", required=True)
    calculate = subparsers.add_parser("calculate", help="Calculate quotes from a JSON request file")
    calculate.add_argument("request", type=Path, help="Request file, '-' for stdin")
    calculate.add_argument(
        "--batch", action="store_true", help="File holds a list of {id, request} objects"
    )
    calculate.add_argument("--stats", action="store_true", help="Print engine statistics to stderr")
    return parser.parse_args(argv)


def load_payload(path: Path) -> Any:
    if str(path) == "-":
        return json.load(sys.stdin)
    with open(path) as f:
        return json.load(f)


async def initialize_resources(container: Container) -> None:
    """Construct the rate cache and start its eviction sweeper."""
    cache = container.rate_cache()
    cache.start_sweeper()
    logger.info("Rate cache initialized")


async def cleanup_resources(container: Container) -> None:
    """Let pending refreshes finish, then close the HTTP session and the cache."""
    cache = container.rate_cache()
    await cache.wait_for_refreshes(container.config().engine.provider_timeout)
    await container.orchestrator().close()
    await cache.close()
    logger.info("Rate cache and HTTP session closed")


async def run_calculate(container: Container, args: argparse.Namespace) -> int:
    """Run the calculate command.

    Returns:
        Process exit code: 0 if every quote succeeded, 1 otherwise.
    """
    orchestrator = container.orchestrator()
    payload = load_payload(args.request)

    if args.batch:
        pairs = [(str(entry["id"]), CalculationRequest.model_validate(entry["request"])) for entry in payload]
        results = await orchestrator.calculate_batch(pairs)
        output: Any = {batch_id: result.model_dump(mode="json") for batch_id, result in results.items()}
        success = all(result.success for result in results.values())
    else:
        result = await orchestrator.calculate(CalculationRequest.model_validate(payload))
        output = result.model_dump(mode="json")
        success = result.success

    print(json.dumps(output, indent=2))
    if args.stats:
        print(json.dumps(orchestrator.get_stats(), indent=2), file=sys.stderr)
    return 0 if success else 1


async def run(args: argparse.Namespace) -> int:
    container = Container()
    container.settings.config_dir.from_value(args.config_dir)

    await initialize_resources(container)
    try:
        return await run_calculate(container, args)
    finally:
        await cleanup_resources(container)


def main(argv: list[str] | None = None) -> int:
    """Main application entry point.

    Configures logging and runs the requested command.

    Returns:
        Process exit code.
    """
    args = parse_args(argv)
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
    )

    try:
        return asyncio.run(run(args))
    except (OSError, json.JSONDecodeError, KeyError, PydanticValidationError) as e:
        logger.error(f"Could not read request: {e}")
        return 2
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
