"""Tests for settings loading."""
import os

from crash_symbolicator.config import Settings


def test_defaults():
    settings = Settings.from_env(env={})
    assert settings == Settings()
    assert settings.system_root == "/"
    assert settings.max_workers == 1
    assert not settings.verbose


def test_from_env():
    settings = Settings.from_env(env={
        "SYMBOLICATE_SYSTEM_ROOT": "/tmp/device",
        "SYMBOLICATE_DPKG_ROOT": "/tmp/device",
        "SYMBOLICATE_NM": "llvm-nm",
        "SYMBOLICATE_OWN_PATH": "/usr/lib/libsymbolicate.dylib",
        "SYMBOLICATE_MAX_WORKERS": "4",
        "SYMBOLICATE_VERBOSE": "yes",
    })
    assert settings.system_root == "/tmp/device"
    assert settings.dpkg_root == "/tmp/device"
    assert settings.nm_path == "llvm-nm"
    assert settings.own_path == "/usr/lib/libsymbolicate.dylib"
    assert settings.max_workers == 4
    assert settings.verbose


def test_bad_values_fall_back():
    settings = Settings.from_env(env={
        "SYMBOLICATE_MAX_WORKERS": "many",
        "SYMBOLICATE_VERBOSE": "0",
    })
    assert settings.max_workers == 1
    assert not settings.verbose


def test_dotenv_file(tmp_path):
    """Values from a .env file are picked up when reading the real environment."""
    key = "SYMBOLICATE_SYSTEM_ROOT"
    saved = os.environ.pop(key, None)
    env_file = tmp_path / ".env"
    env_file.write_text(f"{key}=/tmp/from-dotenv\n")
    try:
        settings = Settings.from_env(dotenv_path=str(env_file))
        assert settings.system_root == "/tmp/from-dotenv"
    finally:
        os.environ.pop(key, None)
        if saved is not None:
            os.environ[key] = saved
