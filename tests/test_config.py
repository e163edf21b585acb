"""
Tests for libragen.config: env > YAML > defaults, validation and logging setup.
"""

from __future__ import annotations

import logging
import os

import pytest


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("LIBRAGEN_"):
            monkeypatch.delenv(key)


def test_defaults():
    from libragen.config import Config
    cfg = Config()
    assert cfg.CHUNK_SIZE == 1000
    assert cfg.CHUNK_OVERLAP == 100
    assert cfg.CONTEXT_MODE == "full"
    assert cfg.AST_CHUNKING is True
    assert cfg.HYBRID_ALPHA == 0.5
    assert cfg.EMBEDDER_TIMEOUT is None
    assert cfg.LIBRARY_PATHS == []
    assert cfg.validate() is cfg


def test_yaml_overrides_defaults(tmp_path):
    from libragen.config import Config
    path = tmp_path / ".libragen.yaml"
    path.write_text(
        "chunk_size: 800\n"
        "context_mode: minimal\n"
        "ast_chunking: false\n"
        "embedder_timeout: 30\n"
        "library_paths:\n  - /opt/libs\n  - ~/libs\n",
        encoding="utf-8",
    )
    cfg = Config.load(str(path))
    assert cfg.CHUNK_SIZE == 800
    assert cfg.CONTEXT_MODE == "minimal"
    assert cfg.AST_CHUNKING is False
    assert cfg.EMBEDDER_TIMEOUT == 30.0
    assert cfg.LIBRARY_PATHS == ["/opt/libs", "~/libs"]


def test_env_overrides_yaml(monkeypatch):
    from libragen.config import Config
    monkeypatch.setenv("LIBRAGEN_CHUNK_SIZE", "400")
    monkeypatch.setenv("LIBRAGEN_HYBRID_ALPHA", "0.25")
    monkeypatch.setenv("LIBRAGEN_AST_CHUNKING", "no")
    monkeypatch.setenv("LIBRAGEN_LIBRARY_PATHS", os.pathsep.join(["/a", "", "/b"]))
    cfg = Config({"chunk_size": 800, "hybrid_alpha": 0.9, "library_paths": ["/c"]})
    assert cfg.CHUNK_SIZE == 400
    assert cfg.HYBRID_ALPHA == 0.25
    assert cfg.AST_CHUNKING is False
    assert cfg.LIBRARY_PATHS == ["/a", "/b"]


def test_env_none_timeout(monkeypatch):
    from libragen.config import Config
    monkeypatch.setenv("LIBRAGEN_EMBEDDER_TIMEOUT", "none")
    assert Config({"embedder_timeout": 10}).EMBEDDER_TIMEOUT is None


def test_bad_value_raises_configuration_error(monkeypatch):
    from libragen.config import Config
    from libragen.errors import ConfigurationError
    monkeypatch.setenv("LIBRAGEN_TOP_K", "many")
    with pytest.raises(ConfigurationError):
        Config()


@pytest.mark.parametrize("data", [
    {"chunk_size": 0},
    {"chunk_size": 100, "chunk_overlap": 100},
    {"context_mode": "everything"},
    {"hybrid_alpha": 2},
    {"build_workers": 0},
    {"embedder_timeout": -1},
])
def test_validate_rejects(data):
    from libragen.config import Config
    from libragen.errors import ConfigurationError
    with pytest.raises(ConfigurationError):
        Config(data).validate()


def test_missing_or_broken_yaml_falls_back(tmp_path):
    from libragen.config import Config
    assert Config.load(str(tmp_path / "missing.yaml")).CHUNK_SIZE == 1000
    broken = tmp_path / "broken.yaml"
    broken.write_text("chunk_size: [unclosed", encoding="utf-8")
    assert Config.load(str(broken)).CHUNK_SIZE == 1000


def test_config_file_discovered_in_cwd(tmp_path, monkeypatch):
    from libragen.config import Config
    (tmp_path / ".libragen.yml").write_text("top_k: 9\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    assert Config.load().TOP_K == 9


def test_configure_logging_sets_package_level():
    from libragen.config import configure_logging
    configure_logging(logging.DEBUG)
    assert logging.getLogger("libragen").level == logging.DEBUG
    configure_logging(logging.WARNING)
    assert logging.getLogger("libragen").level == logging.WARNING
    logging.getLogger("libragen").setLevel(logging.NOTSET)
