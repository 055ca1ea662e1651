"""Run a terminal link from the command line: ``python -m terminal_link``."""

import asyncio

from .config import TerminalLinkConfig
from .runtime import configure_logging, run_terminal


def main() -> None:
    config = TerminalLinkConfig.from_env()
    configure_logging(config.log_level)
    asyncio.run(run_terminal(config))


if __name__ == "__main__":
    main()
