"""
Configuration: loads settings from .libragen.yaml, environment variables,
and built-in defaults (in that priority order: caller args > env > YAML > defaults).

A :class:`Config` is a plain value object.  It is handed to the builder,
the searcher or the library manager by the caller; nothing in the package
keeps a process-wide current configuration.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import yaml

from .errors import ConfigurationError

_DEFAULTS = {
    "chunk_size": 1000,
    "chunk_overlap": 100,
    "context_mode": "full",
    "ast_chunking": True,
    "max_ast_chunk_size": 1500,
    "hybrid_alpha": 0.5,
    "top_k": 5,
    "over_fetch": 4,
    "embed_batch_size": 32,
    "build_workers": 2,
    "queue_size": 4,
    "embedder_timeout": None,
    "embedding_model": "nomic-embed-text",
    "ollama_base_url": "http://localhost:11434",
    "library_paths": [],
}

_ENV_PREFIX = "LIBRAGEN_"

# Config file search locations
_CONFIG_FILENAMES = [".libragen.yaml", ".libragen.yml"]


def _find_config_file(explicit_path: Optional[str] = None) -> Optional[str]:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


def _optional_float(value) -> Optional[float]:
    if value is None or str(value).strip().lower() in ("", "none", "null"):
        return None
    return float(value)


class Config:
    """libragen configuration.

    Settings are resolved in priority order:
    1. Arguments passed by the caller (handled by caller)
    2. Environment variables (``LIBRAGEN_CHUNK_SIZE``…)
    3. .libragen.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: Optional[dict] = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(key: str, cast=str):
            env_val = os.getenv(_ENV_PREFIX + key.upper())
            try:
                if env_val is not None:
                    return cast(env_val)
                yaml_val = yd.get(key)
                if yaml_val is not None:
                    return cast(yaml_val)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"Invalid value for {key}: {exc}") from exc
            return _DEFAULTS[key]

        def _get_bool(key: str) -> bool:
            env_val = os.getenv(_ENV_PREFIX + key.upper())
            if env_val is not None:
                return env_val.lower() in ("1", "true", "yes", "on")
            yaml_val = yd.get(key)
            if yaml_val is not None:
                return bool(yaml_val)
            return _DEFAULTS[key]

        # Chunking
        self.CHUNK_SIZE = _get("chunk_size", cast=int)
        self.CHUNK_OVERLAP = _get("chunk_overlap", cast=int)
        self.CONTEXT_MODE = _get("context_mode")
        self.AST_CHUNKING = _get_bool("ast_chunking")
        self.MAX_AST_CHUNK_SIZE = _get("max_ast_chunk_size", cast=int)

        # Search
        self.HYBRID_ALPHA = _get("hybrid_alpha", cast=float)
        self.TOP_K = _get("top_k", cast=int)
        self.OVER_FETCH = _get("over_fetch", cast=int)

        # Build pipeline
        self.EMBED_BATCH_SIZE = _get("embed_batch_size", cast=int)
        self.BUILD_WORKERS = _get("build_workers", cast=int)
        self.QUEUE_SIZE = _get("queue_size", cast=int)
        self.EMBEDDER_TIMEOUT = _get("embedder_timeout", cast=_optional_float)

        # Embedding model
        self.EMBEDDING_MODEL = _get("embedding_model")
        self.OLLAMA_BASE_URL = _get("ollama_base_url")

        # Library locations
        env_paths = os.getenv(_ENV_PREFIX + "LIBRARY_PATHS")
        if env_paths is not None:
            self.LIBRARY_PATHS: list[str] = [p for p in env_paths.split(os.pathsep) if p]
        else:
            paths = yd.get("library_paths", _DEFAULTS["library_paths"])
            self.LIBRARY_PATHS = [str(p) for p in paths] if isinstance(paths, list) else []

    def validate(self) -> "Config":
        """Raise :class:`ConfigurationError` on inconsistent settings; return self."""
        if self.CHUNK_SIZE <= 0:
            raise ConfigurationError("chunk_size must be positive")
        if not 0 <= self.CHUNK_OVERLAP < self.CHUNK_SIZE:
            raise ConfigurationError("chunk_overlap must be >= 0 and smaller than chunk_size")
        if self.CONTEXT_MODE not in ("none", "minimal", "full"):
            raise ConfigurationError(f"context_mode must be none|minimal|full, got {self.CONTEXT_MODE!r}")
        if not 0.0 <= self.HYBRID_ALPHA <= 1.0:
            raise ConfigurationError("hybrid_alpha must be within [0, 1]")
        for name in ("TOP_K", "OVER_FETCH", "EMBED_BATCH_SIZE", "BUILD_WORKERS",
                     "QUEUE_SIZE", "MAX_AST_CHUNK_SIZE"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name.lower()} must be >= 1")
        if self.EMBEDDER_TIMEOUT is not None and self.EMBEDDER_TIMEOUT <= 0:
            raise ConfigurationError("embedder_timeout must be positive")
        return self

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)


def configure_logging(level: int = logging.INFO) -> None:
    """Install a basic stderr handler unless the application already configured logging."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        )
    logging.getLogger("libragen").setLevel(level)
