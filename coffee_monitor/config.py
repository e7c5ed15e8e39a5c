from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

DEFAULT_CONFIG_PATH = Path("config/config.json")


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class Settings:
    config_path: Path
    db_path: Path
    log_path: Path
    log_level: str
    http_timeout_s: float
    jitter_min_s: float
    jitter_max_s: float
    max_products_per_roastery: int
    tagging_model: str
    tagging_batch_size: int
    tagging_timeout_s: float
    cooldown_hours: float
    report_first_unavailable: bool
    max_new_products_notify: int
    check_interval: str
    timezone: str
    gemini_api_key: Optional[str] = None

    @staticmethod
    def defaults() -> "Settings":
        return Settings(
            config_path=DEFAULT_CONFIG_PATH,
            db_path=Path("data/coffee.db"),
            log_path=Path("logs/coffee_monitor.log"),
            log_level="INFO",
            http_timeout_s=30.0,
            jitter_min_s=0.7,
            jitter_max_s=2.0,
            max_products_per_roastery=250,
            tagging_model="gemini-2.5-flash-lite",
            tagging_batch_size=20,
            tagging_timeout_s=120.0,
            cooldown_hours=24.0,
            report_first_unavailable=True,
            max_new_products_notify=5,
            check_interval="0 9 * * *",
            timezone="Europe/Oslo",
        )


# Settings that may also be given inside a nested config section.
SECTION_KEYS: dict[str, tuple[str, str]] = {
    "db_path": ("database", "path"),
    "log_path": ("logging", "file"),
    "log_level": ("logging", "level"),
    "check_interval": ("monitoring", "check_interval"),
    "timezone": ("monitoring", "timezone"),
    "cooldown_hours": ("monitoring", "cooldown_hours"),
    "max_new_products_notify": ("monitoring", "max_new_products_notify"),
    "report_first_unavailable": ("monitoring", "report_first_unavailable"),
    "http_timeout_s": ("monitoring", "http_timeout_s"),
    "tagging_model": ("tagging", "model"),
    "tagging_batch_size": ("tagging", "batch_size"),
    "tagging_timeout_s": ("tagging", "timeout_s"),
}


def add_bool_flag(
    parser: argparse.ArgumentParser, name: str, help_text: str, default: Optional[bool]
) -> None:
    dest = name.replace("-", "_")
    group = parser.add_mutually_exclusive_group()
    group.add_argument(f"--{name}", dest=dest, action="store_true", help=help_text)
    group.add_argument(
        f"--no-{name}", dest=dest, action="store_false", help=f"Disable {help_text}"
    )
    parser.set_defaults(**{dest: default})


def add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, help="Path to JSON config file")
    parser.add_argument("--db-path", type=Path, help="Path to SQLite database")
    parser.add_argument("--log-path", type=Path, help="Log file path")
    parser.add_argument("--log-level", type=str, help="Log level (e.g. INFO)")
    parser.add_argument("--http-timeout-s", type=float, help="HTTP timeout in seconds")
    parser.add_argument("--jitter-min-s", type=float, help="Minimum jitter sleep (s)")
    parser.add_argument("--jitter-max-s", type=float, help="Maximum jitter sleep (s)")
    parser.add_argument(
        "--max-products-per-roastery",
        type=int,
        help="Max product variants to read per roastery",
    )
    parser.add_argument("--tagging-model", type=str, help="Gemini model ID for tagging")
    parser.add_argument(
        "--tagging-batch-size", type=int, help="Products per tagging request"
    )
    parser.add_argument(
        "--tagging-timeout-s",
        type=float,
        help="Gemini request timeout in seconds (0 = no timeout)",
    )
    parser.add_argument(
        "--cooldown-hours", type=float, help="Hours before re-notifying a product"
    )
    add_bool_flag(
        parser,
        "report-first-unavailable",
        "reporting products first seen unavailable as newly unavailable",
        None,
    )
    parser.add_argument(
        "--max-new-products-notify",
        type=int,
        help="Send a new-products notification only up to this many products",
    )
    parser.add_argument("--check-interval", type=str, help="Cron expression for start")
    parser.add_argument("--timezone", type=str, help="Timezone for scheduled checks")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Coffee Monitor availability agent")
    add_common_options(parser)
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    commands.add_parser("check", help="Run one check now")
    commands.add_parser("start", help="Run checks on the configured schedule")
    commands.add_parser("report", help="Show currently available products")
    commands.add_parser("status", help="Show monitor status and last check")

    favorites = commands.add_parser("favorites", help="Manage favorite coffees")
    action = favorites.add_mutually_exclusive_group()
    action.add_argument("--list", action="store_true", help="List favorites")
    action.add_argument("--add", metavar="NAME", help="Add a favorite")
    action.add_argument("--remove", metavar="NAME", help="Remove a favorite")
    action.add_argument(
        "--add-term",
        nargs=2,
        metavar=("NAME", "TERM"),
        help="Add a search term to a favorite",
    )
    action.add_argument(
        "--remove-term",
        nargs=2,
        metavar=("NAME", "TERM"),
        help="Remove a search term from a favorite",
    )
    favorites.add_argument("--terms", help="Comma-separated search terms for --add")
    favorites.add_argument("--description", default="", help="Description for --add")
    favorites.add_argument(
        "--size-preference",
        choices=("250g", "1kg", "both"),
        help="Only notify for this bag size",
    )
    favorites.add_argument(
        "--organic-only", action="store_true", help="Only notify for organic products"
    )

    tag = commands.add_parser("tag", help="Tag products with AI-extracted attributes")
    tag.add_argument("--limit", type=int, help="Tag at most this many products")
    tag.add_argument("--force", action="store_true", help="Re-tag tagged products")
    tag.add_argument(
        "--dry-run", action="store_true", help="Show tags for the first product only"
    )

    commands.add_parser(
        "backfill-groups", help="Recompute product groups for tagged products"
    )

    history = commands.add_parser("history", help="Show availability history")
    history.add_argument("product_id", type=int, help="Product id")
    history.add_argument("--days", type=int, default=30, help="Days of history")
    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    args = build_parser().parse_args(argv)
    if args.command is None:
        args.command = "check"
    return args


def load_config_file(path: Optional[Path]) -> dict[str, Any]:
    config_path = path or DEFAULT_CONFIG_PATH
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid config JSON ({config_path}): {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a JSON object: {config_path}")
    return data


def build_settings(
    args: argparse.Namespace,
    config: dict[str, Any],
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    env = os.environ if environ is None else environ
    defaults = Settings.defaults()

    def from_config(field: str) -> Any:
        if config.get(field) is not None:
            return config[field]
        section_key = SECTION_KEYS.get(field)
        if section_key:
            section = config.get(section_key[0])
            if isinstance(section, dict) and section.get(section_key[1]) is not None:
                return section[section_key[1]]
        return None

    def pick_value(field: str) -> Any:
        value = getattr(args, field, None)
        if value is not None:
            return value
        value = from_config(field)
        if value is not None:
            return value
        return getattr(defaults, field)

    def pick_path(field: str) -> Path:
        value = pick_value(field)
        return value if isinstance(value, Path) else Path(str(value))

    def pick_db_path() -> Path:
        if getattr(args, "db_path", None) is not None:
            return Path(args.db_path)
        if env.get("DATABASE_PATH"):
            return Path(env["DATABASE_PATH"])
        return pick_path("db_path")

    try:
        return Settings(
            config_path=getattr(args, "config", None) or DEFAULT_CONFIG_PATH,
            db_path=pick_db_path(),
            log_path=pick_path("log_path"),
            log_level=str(pick_value("log_level")).upper(),
            http_timeout_s=float(pick_value("http_timeout_s")),
            jitter_min_s=float(pick_value("jitter_min_s")),
            jitter_max_s=float(pick_value("jitter_max_s")),
            max_products_per_roastery=int(pick_value("max_products_per_roastery")),
            tagging_model=str(pick_value("tagging_model")),
            tagging_batch_size=int(pick_value("tagging_batch_size")),
            tagging_timeout_s=float(pick_value("tagging_timeout_s")),
            cooldown_hours=float(pick_value("cooldown_hours")),
            report_first_unavailable=bool(pick_value("report_first_unavailable")),
            max_new_products_notify=int(pick_value("max_new_products_notify")),
            check_interval=str(pick_value("check_interval")),
            timezone=str(pick_value("timezone")),
            gemini_api_key=env.get("GEMINI_API_KEY") or None,
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid setting value: {exc}") from exc
