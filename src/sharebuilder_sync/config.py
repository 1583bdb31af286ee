from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator

from .portal.variants import KNOWN_VARIANTS, get_variant


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Env-only configuration, so most users only need a `.env` file.

    A YAML file, when present, overrides any of these keys.
    """
    return {
        "site": {
            "variant": os.getenv("SHAREBUILDER_VARIANT", "sharebuilder"),
            "base_url": os.getenv("SHAREBUILDER_BASE_URL", ""),
            "username": os.getenv("SHAREBUILDER_USERNAME", ""),
            "password": os.getenv("SHAREBUILDER_PASSWORD", ""),
            "image": os.getenv("SHAREBUILDER_IMAGE", ""),
            "phrase": os.getenv("SHAREBUILDER_PHRASE", ""),
            "timeout_seconds": _env_float("SHAREBUILDER_TIMEOUT_SECONDS", 30.0),
            "user_agent": os.getenv("SHAREBUILDER_USER_AGENT", ""),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/sharebuilder.log"),
        },
        "debug": {
            "dir": os.getenv("DEBUG_DIR", "data/debug"),
            "capture_pages": _env_bool("DEBUG_CAPTURE_PAGES", default=False),
        },
    }


class SiteConfig(BaseModel):
    """
    Login and site selection.

    `image` is the file name of the security image picked on the site (e.g. `I0123456.jpg`) and
    `phrase` the security phrase; both are compared against the challenge page and never sent.
    """

    variant: str = "sharebuilder"
    base_url: str = ""
    username: str
    password: str = Field(repr=False)
    image: str = Field(repr=False)
    phrase: str = Field(repr=False)
    timeout_seconds: float = 30.0
    user_agent: str = ""

    @model_validator(mode="after")
    def _fill_defaults_and_validate(self) -> "SiteConfig":
        variant = (self.variant or "").strip().lower()
        if variant not in KNOWN_VARIANTS:
            known = ", ".join(sorted(KNOWN_VARIANTS))
            raise ValueError(f"site.variant must be one of: {known} (got {self.variant!r})")

        for name in ("username", "password", "image", "phrase"):
            if not (getattr(self, name) or "").strip():
                raise ValueError(f"site.{name} is required")

        base_url = (self.base_url or "").strip() or get_variant(variant).base_url
        base_url = base_url.rstrip("/")
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("site.base_url must be a full URL like 'https://www.sharebuilder.com/sharebuilder'")

        if self.timeout_seconds <= 0:
            raise ValueError("site.timeout_seconds must be positive")

        self.variant = variant
        self.base_url = base_url
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/sharebuilder.log"


class DebugConfig(BaseModel):
    dir: str = "data/debug"
    # Write every response body to `dir`; failing pages are always written.
    capture_pages: bool = False


class AppConfig(BaseModel):
    site: SiteConfig
    logging: LoggingConfig = LoggingConfig()
    debug: DebugConfig = DebugConfig()


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
