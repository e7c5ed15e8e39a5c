from __future__ import annotations

import asyncio
import sys
from typing import Optional

from .config import ConfigError, build_settings, load_config_file, parse_args
from .runner import run


def main(argv: Optional[list[str]] = None) -> None:
    try:
        args = parse_args(argv)
        config = load_config_file(args.config)
        settings = build_settings(args, config)
        exit_code = asyncio.run(run(args, settings, config))
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        exit_code = 1
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
