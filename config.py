import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import FrozenSet

from dotenv import load_dotenv

from models import (
    ABORT,
    BET_CATEGORIES,
    HIERARCHY_FAILURE_POLICIES,
    MALAY,
    OVER_UNDER,
    PRICE_STYLES,
    SettlementRules,
)

PROJECT_ROOT = Path(__file__).resolve().parent

DEFAULT_DSN = "dbname=sportsbook user=sportsbook password=secret host=localhost port=5432"


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _categories_env(name: str, default: FrozenSet[str]) -> FrozenSet[str]:
    """comma separated bet categories; set but empty means none."""
    raw = os.getenv(name)
    if raw is None:
        return default
    categories = frozenset(part.strip() for part in raw.split(",") if part.strip())
    unknown = sorted(categories - set(BET_CATEGORIES))
    if unknown:
        raise ValueError(
            f"{name} must list bet categories from {', '.join(BET_CATEGORIES)}, got {', '.join(unknown)}"
        )
    return categories


@dataclass(frozen=True)
class Config:
    database_url: str = DEFAULT_DSN
    price_style: str = MALAY
    hierarchy_failure_policy: str = ABORT
    decisive_half_line_markets: FrozenSet[str] = frozenset({OVER_UNDER})
    max_hierarchy_depth: int = 10
    settlement_workers: int = 4
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_path: Path | str | None = None) -> "Config":
        load_dotenv(dotenv_path=env_path or PROJECT_ROOT / ".env")

        price_style = os.getenv("SETTLEMENT_PRICE_STYLE", MALAY).strip().lower()
        if price_style not in PRICE_STYLES:
            raise ValueError(
                f"SETTLEMENT_PRICE_STYLE must be one of {', '.join(PRICE_STYLES)}, got {price_style!r}"
            )

        policy = os.getenv("SETTLEMENT_HIERARCHY_FAILURE_POLICY", ABORT).strip().lower()
        if policy not in HIERARCHY_FAILURE_POLICIES:
            raise ValueError(
                "SETTLEMENT_HIERARCHY_FAILURE_POLICY must be one of "
                f"{', '.join(HIERARCHY_FAILURE_POLICIES)}, got {policy!r}"
            )

        log_level = os.getenv("SETTLEMENT_LOG_LEVEL", "INFO").strip().upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ValueError(f"SETTLEMENT_LOG_LEVEL is not a logging level: {log_level!r}")

        return cls(
            database_url=os.getenv("SETTLEMENT_DATABASE_URL") or DEFAULT_DSN,
            price_style=price_style,
            hierarchy_failure_policy=policy,
            decisive_half_line_markets=_categories_env(
                "SETTLEMENT_DECISIVE_HALF_LINE_MARKETS", frozenset({OVER_UNDER})
            ),
            max_hierarchy_depth=_int_env("SETTLEMENT_MAX_HIERARCHY_DEPTH", 10),
            settlement_workers=_int_env("SETTLEMENT_WORKERS", 4),
            log_level=log_level,
        )

    def rules(self) -> SettlementRules:
        return SettlementRules(
            price_style=self.price_style,
            decisive_half_line_markets=self.decisive_half_line_markets,
            hierarchy_failure_policy=self.hierarchy_failure_policy,
            max_hierarchy_depth=self.max_hierarchy_depth,
        )


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.from_env()


def configure_logging(config: Config | None = None) -> None:
    config = config or get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
