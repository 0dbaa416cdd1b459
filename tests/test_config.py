import logging

from config import configure_logging, normalize_database_url


def test_database_url_fallback_is_local_sqlite():
    assert normalize_database_url(None).startswith('sqlite:///')
    assert normalize_database_url('').endswith('gym.db')


def test_postgres_scheme_is_normalized():
    assert normalize_database_url('postgres://u:p@db:5432/gym') == 'postgresql://u:p@db:5432/gym'


def test_render_hosts_require_ssl():
    url = normalize_database_url('postgres://u:p@dpg-x.oregon-postgres.render.com/gym')
    assert url.endswith('?sslmode=require')
    kept = normalize_database_url('postgresql://u:p@h.render.com/gym?sslmode=disable')
    assert kept.endswith('sslmode=disable')


def test_configure_logging_installs_one_handler():
    configure_logging('DEBUG')
    configure_logging('INFO')
    ours = [h for h in logging.getLogger().handlers if getattr(h, '_gym_handler', False)]
    assert len(ours) == 1
    assert logging.getLogger().level == logging.INFO
