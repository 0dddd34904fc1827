import importlib

from bn_engine import config


def reload_with_env(monkeypatch, **env):
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    try:
        importlib.reload(config)
        return (config.MAX_32BIT_INDEX, config.DISABLE_TRITON, config.BLOCK_SIZE, config.CHANNEL_BLOCK)
    finally:
        for key in env:
            monkeypatch.delenv(key)
        importlib.reload(config)


def test_settings_come_from_environment(monkeypatch):
    settings = reload_with_env(
        monkeypatch,
        BN_ENGINE_MAX_32BIT_INDEX="1000",
        BN_ENGINE_DISABLE_TRITON="1",
        BN_ENGINE_BLOCK_SIZE="256",
        BN_ENGINE_CHANNEL_BLOCK="16",
    )
    assert settings == (1000, True, 256, 16)


def test_defaults(monkeypatch):
    for key in ("BN_ENGINE_MAX_32BIT_INDEX", "BN_ENGINE_DISABLE_TRITON",
                "BN_ENGINE_BLOCK_SIZE", "BN_ENGINE_CHANNEL_BLOCK"):
        monkeypatch.delenv(key, raising=False)
    importlib.reload(config)
    assert config.max_32bit_index() == 2**31 - 1
    assert config.triton_enabled()
    assert config.BLOCK_SIZE == 1024
    assert config.CHANNEL_BLOCK == 32
