import logging
import os
import sys

from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

load_dotenv(os.path.join(BASE_DIR, '.env'))

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default) not in ('0', 'false', 'False', '')


def normalize_database_url(db_url: str | None) -> str:
    """Normalize DATABASE_URL for SQLAlchemy. Fallback to local SQLite."""
    if not db_url:
        return f"sqlite:///{os.path.join(BASE_DIR, 'gym.db')}"
    if db_url.startswith('postgres://'):
        db_url = db_url.replace('postgres://', 'postgresql://', 1)
    # Render external hostnames require SSL
    if ('render.com' in db_url) and ('sslmode=' not in db_url):
        sep = '&' if '?' in db_url else '?'
        db_url = f"{db_url}{sep}sslmode=require"
    return db_url


def load_config() -> dict:
    return {
        'SQLALCHEMY_DATABASE_URI': normalize_database_url(os.getenv('DATABASE_URL')),
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SECRET_KEY': os.getenv('SECRET_KEY', 'dev-secret-change-me'),
        'SESSION_COOKIE_HTTPONLY': True,
        'SESSION_COOKIE_SAMESITE': 'Lax',
        'SESSION_COOKIE_SECURE': _flag('FLASK_SECURE_COOKIES', '1'),
        'ENABLE_HSTS': _flag('ENABLE_HSTS', '0'),
        'ADMIN_USERNAME': os.getenv('ADMIN_USERNAME', 'admin'),
        'ADMIN_PASSWORD': os.getenv('ADMIN_PASSWORD', 'admin123'),
        'CURRENCY_SYMBOL': os.getenv('CURRENCY_SYMBOL', '₹'),
        'REPORT_FETCH_TIMEOUT_MS': int(os.getenv('REPORT_FETCH_TIMEOUT_MS', '5000')),
        'REPORT_FETCH_RETRIES': int(os.getenv('REPORT_FETCH_RETRIES', '1')),
        'LOG_LEVEL': os.getenv('LOG_LEVEL', 'INFO'),
    }


def configure_logging(level: str = 'INFO') -> None:
    root = logging.getLogger()
    root.setLevel(level)
    # One stream handler only, even when create_app runs repeatedly (tests)
    for h in root.handlers:
        if getattr(h, '_gym_handler', False):
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._gym_handler = True
    root.addHandler(handler)
