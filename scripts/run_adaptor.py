"""CLI entrypoint to run the feed adaptor locally."""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from feedadaptor.config import AdaptorConfig, DEFAULT_CONFIG
from feedadaptor.errors import InvalidConfiguration
from feedadaptor.pusher import PushStatus
from feedadaptor.service import FeedService

EXIT_CODES = {PushStatus.SUCCESS: 0, PushStatus.FAILURE: 1, PushStatus.INTERRUPTED: 2}


# ${VAR}, ${VAR:-fallback} or $VAR
ENV_REFERENCE = re.compile(r"\$\{(?P<braced>\w+)(?::-(?P<fallback>[^}]*))?\}|\$(?P<bare>\w+)")


def load_env_file(env_path: str = ".env") -> Dict[str, str]:
    """Export ``KEY=VALUE`` lines from an env file without overriding the environment.

    Relative paths are looked up from the repository root. Returns the
    variables that were applied.
    """
    path = Path(env_path)
    if not path.is_absolute():
        path = ROOT / path
    if not path.is_file():
        logging.debug("No env file at %s", path)
        return {}

    applied: Dict[str, str] = {}
    for raw in path.read_text().splitlines():
        line = raw.strip()
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        name, sep, value = line.partition("=")
        name = name.strip()
        if line.startswith("#") or not sep or not name:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        if name not in os.environ:
            os.environ[name] = value
            applied[name] = value
    logging.info("Applied %d variables from %s", len(applied), path)
    return applied


def _substitute(match: "re.Match[str]") -> str:
    name = match.group("braced") or match.group("bare")
    if name in os.environ:
        return os.environ[name]
    fallback = match.group("fallback")
    return fallback if fallback is not None else match.group(0)


def expand_env_vars(data: Any) -> Any:
    """Replace environment references in every string of a parsed config.

    Unset variables without a fallback are left as written.
    """
    if isinstance(data, dict):
        return {key: expand_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [expand_env_vars(item) for item in data]
    if isinstance(data, str):
        return ENV_REFERENCE.sub(_substitute, data)
    return data


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Push repository DocIds to the search appliance")
    parser.add_argument(
        "--config",
        type=Path,
        help="Optional path to a JSON config file overriding defaults",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Verbosity for logging output",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to .env file (default: .env)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single full push and exit (0 success, 1 failure, 2 interrupted)",
    )
    return parser.parse_args(argv)


def load_config(path: Path | None) -> AdaptorConfig:
    if not path:
        return DEFAULT_CONFIG
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw_config = json.load(f)

    expanded_config = expand_env_vars(raw_config)
    return AdaptorConfig.from_dict(expanded_config)


def run_forever(service: FeedService, config: AdaptorConfig) -> None:
    stopping = threading.Event()

    def request_stop(signum, frame):
        logging.info("Received signal %d, shutting down", signum)
        stopping.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)
    service.start()
    try:
        if config.web.enabled:
            from web.app import create_app

            web_thread = threading.Thread(
                target=create_app(service).run,
                kwargs={"host": config.web.host, "port": config.web.port},
                name="status-api",
                daemon=True,
            )
            web_thread.start()
        stopping.wait()
    finally:
        service.stop()


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Load environment variables from .env file
    load_env_file(args.env_file)

    try:
        config = load_config(args.config)
        service = FeedService(config)
    except InvalidConfiguration as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    if args.once:
        status = service.run_full_push()
        snapshot = service.journal.snapshot()
        logging.info(
            "Full push finished with status %s: %d items in %d batches",
            status.value,
            snapshot.total_items_pushed,
            snapshot.total_batches_pushed,
        )
        return EXIT_CODES[status]

    run_forever(service, config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
