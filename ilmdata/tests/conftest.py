# ilmdata/tests/conftest.py
import os

import pytest

from ilmdata import config
from ilmdata import logging as ilm_logging
from ilmdata.crypto import TokenCipher, reset_secret_for_tests

SECRET = "0123456789abcdef0123456789abcdef"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in list(os.environ):
        if name.startswith("ILM_") or name == "ENCRYPTION_SECRET":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ILM_DATA_DIR", str(tmp_path / "public" / "data"))
    # pipelines set up root JSON logging on first use; tests opt in explicitly
    monkeypatch.setenv("ILM_LOG_JSON", "0")
    monkeypatch.setattr(ilm_logging, "_configured", False)
    reset_secret_for_tests()
    config.reload_settings()
    yield
    reset_secret_for_tests()


@pytest.fixture
def cipher():
    return TokenCipher.from_secret(SECRET)


@pytest.fixture
def write_text(tmp_path):
    def _write(name, text):
        p = tmp_path / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")
        return p

    return _write


@pytest.fixture
def secret():
    return SECRET
