import pytest

from branchchat import config


@pytest.fixture()
def env(monkeypatch):
    for name in (
        "BRANCHCHAT_STORAGE",
        "BRANCHCHAT_PG_DSN",
        "BRANCHCHAT_PG_SCHEMA",
        "BRANCHCHAT_PG_POOL_MIN",
        "BRANCHCHAT_PG_POOL_MAX",
        "BRANCHCHAT_RESPONSE_DELAY",
        "BRANCHCHAT_SERVER_PORT",
        "BRANCHCHAT_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    yield monkeypatch
    monkeypatch.undo()
    config.reload_from_environment()


def test_defaults_without_environment(env):
    config.reload_from_environment()

    assert config.STORAGE == "memory"
    assert config.PG_DSN is None
    assert config.RESPONSE_DELAY == 1.0
    assert config.SERVER_PORT == 7860
    assert config.LOG_LEVEL == "INFO"


def test_dsn_selects_postgres_storage(env):
    env.setenv("BRANCHCHAT_PG_DSN", " postgresql://chat@localhost/chat ")
    env.setenv("BRANCHCHAT_PG_SCHEMA", "branching")

    config.reload_from_environment()

    assert config.STORAGE == "pg"
    assert config.PG_DSN == "postgresql://chat@localhost/chat"
    assert config.PG_SCHEMA == "branching"


def test_invalid_values_fall_back_to_defaults(env):
    env.setenv("BRANCHCHAT_RESPONSE_DELAY", "-2")
    env.setenv("BRANCHCHAT_SERVER_PORT", "oops")
    env.setenv("BRANCHCHAT_PG_POOL_MIN", "4")
    env.setenv("BRANCHCHAT_PG_POOL_MAX", "2")
    env.setenv("BRANCHCHAT_LOG_LEVEL", "debug")

    config.reload_from_environment()

    assert config.RESPONSE_DELAY == 1.0
    assert config.SERVER_PORT == 7860
    assert config.PG_POOL_MIN == 4
    assert config.PG_POOL_MAX == 4
    assert config.LOG_LEVEL == "DEBUG"


def test_package_forwards_config_attributes(env):
    env.setenv("BRANCHCHAT_RESPONSE_DELAY", "0.5")

    import branchchat

    branchchat.reload_from_environment()

    assert branchchat.RESPONSE_DELAY == 0.5
