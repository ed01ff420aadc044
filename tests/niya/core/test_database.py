from niya.core.database import normalize_db_url


def test_postgres_urls_get_psycopg_driver():
    assert normalize_db_url("postgres://u:p@db/niya") == "postgresql+psycopg://u:p@db/niya"
    assert normalize_db_url("postgresql://u:p@db/niya") == "postgresql+psycopg://u:p@db/niya"


def test_other_urls_untouched():
    assert normalize_db_url("postgresql+asyncpg://db/niya") == "postgresql+asyncpg://db/niya"
    assert normalize_db_url("sqlite:///niya.db") == "sqlite:///niya.db"
