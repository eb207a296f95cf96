from paydesk.config import (
    BaseConfig,
    ProductionConfig,
    StagingConfig,
    TestingConfig,
    engine_options,
)


def test_postgres_engine_has_bounded_waits():
    opts = engine_options("postgresql+psycopg://app@db/paydesk")
    assert opts["pool_pre_ping"] is True
    assert opts["pool_timeout"] > 0
    connect = opts["connect_args"]
    assert connect["connect_timeout"] > 0
    assert "-c statement_timeout=" in connect["options"]
    assert "-c lock_timeout=" in connect["options"]

    assert engine_options("postgres://app@db/paydesk")["connect_args"] == connect

def test_sqlite_engine_gets_no_postgres_options():
    # SQLite pools reject pool sizing args and libpq options
    assert engine_options("sqlite:///:memory:") == {"pool_pre_ping": True}
    assert engine_options(None) == {"pool_pre_ping": True}

def test_every_config_derives_options_from_its_url():
    for cfg in (BaseConfig, StagingConfig, ProductionConfig, TestingConfig):
        assert cfg.SQLALCHEMY_ENGINE_OPTIONS == engine_options(cfg.SQLALCHEMY_DATABASE_URI)
