from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .config import ConfigError
from .favorites import SIZE_PREFERENCES
from .models import RoasterySource
from .notifier import DesktopConfig, EmailConfig, NotificationConfig, TelegramConfig
from .preferences import KNOWN_DIMENSIONS, ConstraintRule, PreferenceConfig
from .url_utils import normalize_base_url


@dataclass(frozen=True)
class FavoriteSeed:
    name: str
    terms: tuple[str, ...]
    description: str = ""
    size_preference: Optional[str] = None
    organic_only: bool = False


def to_str_dict(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    result: dict[str, str] = {}
    for key, val in value.items():
        if key is None or val is None:
            continue
        result[str(key)] = str(val)
    return result


def to_str_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    if isinstance(value, list):
        return tuple(str(item).strip() for item in value if str(item).strip())
    return ()


def to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def first_key(entry: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if entry.get(name) is not None:
            return entry[name]
    return None


def load_roasteries(config: Mapping[str, Any], logger: logging.Logger) -> list[RoasterySource]:
    entries = config.get("roasteries")
    if not isinstance(entries, list) or not entries:
        raise ConfigError("roasteries must be a non-empty list")

    roasteries: list[RoasterySource] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigError(f"roasteries[{index}] must be an object")
        base_url = normalize_base_url(str(first_key(entry, "base_url", "baseUrl") or ""))
        if not base_url:
            raise ConfigError(f"roasteries[{index}].base_url is required")
        name = str(entry.get("name") or "").strip()
        if not name:
            raise ConfigError(f"roasteries[{index}].name is required")
        try:
            roastery = RoasterySource(
                name=name,
                base_url=base_url,
                products_path=str(entry.get("products_path", "/products.json")),
                enabled=to_bool(entry.get("enabled", True)),
                jitter_multiplier=float(entry.get("jitter_multiplier", 1.0)),
                products_headers=to_str_dict(entry.get("products_headers")),
                products_params=to_str_dict(entry.get("products_params")),
                max_pages=int(entry.get("max_pages", 1)),
                page_param=str(entry.get("page_param", "page")),
                max_products=(
                    int(entry["max_products"])
                    if entry.get("max_products") is not None
                    else None
                ),
                include_product_types=to_str_tuple(entry.get("include_product_types")),
                exclude_product_types=to_str_tuple(entry.get("exclude_product_types")),
                exclude_title_keywords=to_str_tuple(entry.get("exclude_title_keywords")),
                organic=to_bool(entry.get("organic", False)),
                category=str(entry.get("category") or ""),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"roasteries[{index}] has an invalid value: {exc}") from exc
        if not roastery.enabled:
            logger.info("Roastery disabled in config: %s", roastery.name)
            continue
        roasteries.append(roastery)
    if not roasteries:
        raise ConfigError("No enabled roasteries configured")
    return roasteries


def parse_favorite_seeds(config: Mapping[str, Any]) -> list[FavoriteSeed]:
    seeds: list[FavoriteSeed] = []
    for index, entry in enumerate(config.get("favorites") or []):
        if isinstance(entry, str):
            entry = {"pattern": entry}
        if not isinstance(entry, dict):
            raise ConfigError(f"favorites[{index}] must be an object or string")
        name = str(first_key(entry, "name", "pattern") or "").strip()
        if not name:
            raise ConfigError(f"favorites[{index}] needs a name or pattern")
        size_preference = entry.get("size_preference")
        if size_preference is not None and size_preference not in SIZE_PREFERENCES:
            raise ConfigError(
                f"favorites[{index}].size_preference must be one of "
                f"{', '.join(SIZE_PREFERENCES)}"
            )
        seeds.append(
            FavoriteSeed(
                name=name,
                terms=to_str_tuple(entry.get("terms")) or (name,),
                description=str(entry.get("description") or ""),
                size_preference=size_preference,
                organic_only=to_bool(entry.get("organic_only", False)),
            )
        )
    return seeds


def _check_predicate(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be an object")
    unknown = sorted(set(value) - KNOWN_DIMENSIONS)
    if unknown:
        raise ConfigError(f"{where} uses unknown attributes: {', '.join(unknown)}")
    return dict(value)


def parse_preferences(config: Mapping[str, Any]) -> Optional[PreferenceConfig]:
    """Validate the ``preferences`` block against the known attribute names."""
    raw = config.get("preferences")
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigError("preferences must be an object")

    dimensions: dict[str, dict[str, int]] = {}
    raw_dimensions = raw.get("dimensions") or {}
    if not isinstance(raw_dimensions, dict):
        raise ConfigError("preferences.dimensions must be an object")
    for name, weights in raw_dimensions.items():
        if name not in KNOWN_DIMENSIONS:
            raise ConfigError(f"Unknown preference dimension: {name}")
        if not isinstance(weights, dict):
            raise ConfigError(f"preferences.dimensions.{name} must map values to weights")
        try:
            dimensions[name] = {
                str(value).lower(): int(weight) for value, weight in weights.items()
            }
        except (TypeError, ValueError) as exc:
            raise ConfigError(
                f"preferences.dimensions.{name} weights must be integers"
            ) from exc

    constraints = []
    for index, rule in enumerate(raw.get("constraints") or []):
        if not isinstance(rule, dict):
            raise ConfigError(f"preferences.constraints[{index}] must be an object")
        constraints.append(
            ConstraintRule(
                when=_check_predicate(rule.get("when"), f"constraints[{index}].when"),
                require=_check_predicate(
                    rule.get("require"), f"constraints[{index}].require"
                ),
            )
        )

    try:
        min_score = float(raw.get("min_score", 0) or 0)
    except (TypeError, ValueError) as exc:
        raise ConfigError("preferences.min_score must be a number") from exc
    return PreferenceConfig(
        enabled=to_bool(raw.get("enabled", False)),
        dimensions=dimensions,
        constraints=tuple(constraints),
        min_score=min_score,
    )


def parse_notification_config(
    config: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None
) -> NotificationConfig:
    env = os.environ if environ is None else environ
    notifications = config.get("notifications") or {}
    email_raw = notifications.get("email") or {}
    smtp = email_raw.get("smtp") or {}
    auth = smtp.get("auth") or {}
    telegram_raw = notifications.get("telegram") or {}
    desktop_raw = notifications.get("desktop") or {}

    recipients = to_str_tuple(email_raw.get("to"))
    if env.get("EMAIL_TO"):
        recipients = to_str_tuple(env["EMAIL_TO"])
    try:
        port = int(env.get("EMAIL_PORT") or smtp.get("port") or 587)
    except ValueError as exc:
        raise ConfigError(f"Invalid email port: {exc}") from exc

    email = EmailConfig(
        enabled=to_bool(email_raw.get("enabled", False)),
        host=env.get("EMAIL_HOST") or str(smtp.get("host") or ""),
        port=port,
        secure=to_bool(smtp.get("secure", False)),
        user=env.get("EMAIL_USER") or str(auth.get("user") or ""),
        password=env.get("EMAIL_PASS") or str(auth.get("pass") or ""),
        sender=env.get("EMAIL_FROM") or str(email_raw.get("from") or ""),
        recipients=recipients,
    )
    telegram_enabled = to_bool(telegram_raw.get("enabled", False))
    if env.get("TELEGRAM_ENABLED") is not None:
        telegram_enabled = env["TELEGRAM_ENABLED"].strip().lower() == "true"
    telegram = TelegramConfig(
        enabled=telegram_enabled,
        bot_token=env.get("TELEGRAM_BOT_TOKEN")
        or str(first_key(telegram_raw, "bot_token", "botToken") or ""),
        chat_id=env.get("TELEGRAM_CHAT_ID")
        or str(first_key(telegram_raw, "chat_id", "chatId") or ""),
    )
    return NotificationConfig(
        email=email,
        telegram=telegram,
        desktop=DesktopConfig(enabled=to_bool(desktop_raw.get("enabled", False))),
    )
