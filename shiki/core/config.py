from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Literal, Optional, cast

import yaml

from shiki.core.errors import ConfigError
from shiki.core.ids import DEFAULT_ATTEMPTS_PER_LENGTH


SHIKI_DIR = ".shiki"
DB_FILENAME = "shiki.db"
CONFIG_FILENAME = "config.yaml"
PRDS_DIRNAME = "prds"

PromotionPolicy = Literal["lazy", "eager"]
ALLOWED_POLICIES: set[str] = {"lazy", "eager"}


@dataclass(frozen=True)
class ShikiConfig:
    # lazy: promote only on explicit promote_eligible; eager: after every unblocking mutation
    promotion: PromotionPolicy = "lazy"
    id_attempts: int = DEFAULT_ATTEMPTS_PER_LENGTH
    busy_timeout_ms: int = 5000
    actor: str = "cli"
    log_level: str = "WARNING"


DEFAULT_CONFIG = ShikiConfig()


def resolve_root(root: Optional[str] = None) -> Path:
    """Project root: explicit argument, then SHIKI_ROOT, then cwd."""
    if root:
        return Path(root)
    env_root = os.getenv("SHIKI_ROOT")
    if env_root:
        return Path(env_root)
    return Path.cwd()


def shiki_dir(root: Path) -> Path:
    return root / SHIKI_DIR


def db_path(root: Path) -> Path:
    return shiki_dir(root) / DB_FILENAME


def prds_dir(root: Path) -> Path:
    return shiki_dir(root) / PRDS_DIRNAME


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load raw overrides from a YAML mapping. Missing file means no overrides."""
    p = Path(path)
    if not p.exists():
        return {}
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(code="E_CONFIG_INVALID", message=f"{p}: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(code="E_CONFIG_INVALID", message=f"{p}: config must be a mapping")
    return raw


def merged_config(overrides: dict[str, Any] | None = None) -> ShikiConfig:
    """Return DEFAULT_CONFIG with validated overrides applied."""
    cfg = DEFAULT_CONFIG
    if not overrides:
        return cfg

    unknown = sorted(set(overrides) - set(DEFAULT_CONFIG.__dataclass_fields__))
    if unknown:
        raise ConfigError(code="E_CONFIG_INVALID", message=f"unknown config keys: {unknown}")

    promotion = overrides.get("promotion", cfg.promotion)
    if not isinstance(promotion, str) or promotion not in ALLOWED_POLICIES:
        raise ConfigError(
            code="E_CONFIG_INVALID",
            message=f"promotion must be one of {sorted(ALLOWED_POLICIES)}",
        )

    id_attempts = overrides.get("id_attempts", cfg.id_attempts)
    if not isinstance(id_attempts, int) or isinstance(id_attempts, bool) or id_attempts < 1:
        raise ConfigError(code="E_CONFIG_INVALID", message="id_attempts must be an integer >= 1")

    busy_timeout_ms = overrides.get("busy_timeout_ms", cfg.busy_timeout_ms)
    if (
        not isinstance(busy_timeout_ms, int)
        or isinstance(busy_timeout_ms, bool)
        or busy_timeout_ms < 0
    ):
        raise ConfigError(
            code="E_CONFIG_INVALID", message="busy_timeout_ms must be an integer >= 0"
        )

    actor = overrides.get("actor", cfg.actor)
    if not isinstance(actor, str) or not actor.strip():
        raise ConfigError(code="E_CONFIG_INVALID", message="actor must be a non-empty string")

    log_level = overrides.get("log_level", cfg.log_level)
    if not isinstance(log_level, str) or not isinstance(
        logging.getLevelName(log_level.upper()), int
    ):
        raise ConfigError(
            code="E_CONFIG_INVALID", message=f"log_level is not a logging level: {log_level}"
        )

    return replace(
        cfg,
        promotion=cast(PromotionPolicy, promotion),
        id_attempts=id_attempts,
        busy_timeout_ms=busy_timeout_ms,
        actor=actor.strip(),
        log_level=log_level.upper(),
    )


def _env_overrides() -> dict[str, Any]:
    out: dict[str, Any] = {}
    if os.getenv("SHIKI_PROMOTION"):
        out["promotion"] = os.environ["SHIKI_PROMOTION"].strip().lower()
    if os.getenv("SHIKI_ACTOR"):
        out["actor"] = os.environ["SHIKI_ACTOR"]
    if os.getenv("SHIKI_LOG_LEVEL"):
        out["log_level"] = os.environ["SHIKI_LOG_LEVEL"]
    return out


def load_config(root: Path) -> ShikiConfig:
    """Config for a project: .shiki/config.yaml, then SHIKI_* environment overrides."""
    overrides = load_config_file(shiki_dir(root) / CONFIG_FILENAME)
    overrides.update(_env_overrides())
    return merged_config(overrides)
