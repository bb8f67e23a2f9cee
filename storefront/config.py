import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default='false'):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Payment collaborator. "mock" approves every session.
    PAYMENT_GATEWAY = os.environ.get('PAYMENT_GATEWAY', 'mock').lower()
    PAYMENT_PUBLIC_KEY = os.environ.get('PAYMENT_PUBLIC_KEY')
    PAYMENT_ACCESS_TOKEN = os.environ.get('PAYMENT_ACCESS_TOKEN')
    PAYMENT_API_URL = os.environ.get(
        'PAYMENT_API_URL', 'https://api.mercadopago.com')
    PAYMENT_CURRENCY = os.environ.get('PAYMENT_CURRENCY', 'USD')
    PAYMENT_TIMEOUT_SECONDS = float(
        os.environ.get('PAYMENT_TIMEOUT_SECONDS', '10'))

    # Base URL used to build the payment return URLs.
    SITE_URL = os.environ.get('SITE_URL', 'http://localhost:5000')

    DECREMENT_STOCK_ON_CHECKOUT = _env_bool(
        'DECREMENT_STOCK_ON_CHECKOUT', 'true')

    # Empty means any email may register a store.
    ADMIN_SIGNUP_EMAIL_SUFFIX = os.environ.get('ADMIN_SIGNUP_EMAIL_SUFFIX', '')

    # Pagination configuration
    ITEMS_PER_PAGE = 20
    MAX_ITEMS_PER_PAGE = 50

    CHAT_MAX_MESSAGE_LENGTH = 2000
    CHAT_STREAM_HEARTBEAT_SECONDS = 15

    LOG_FILE = os.environ.get('LOG_FILE', 'storefront.log')
    MAJOR_EVENTS_LOG = os.environ.get('MAJOR_EVENTS_LOG', 'major_events.log')

    REQUIRED_SETTINGS = (
        'SECRET_KEY',
        'SQLALCHEMY_DATABASE_URI',
        'PAYMENT_PUBLIC_KEY',
    )
    HTTP_GATEWAY_SETTINGS = (
        'PAYMENT_ACCESS_TOKEN',
        'PAYMENT_API_URL',
    )


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    PAYMENT_GATEWAY = 'mock'
    PAYMENT_PUBLIC_KEY = 'TEST-public-key'
    SITE_URL = 'http://shop.test'
    DECREMENT_STOCK_ON_CHECKOUT = True
    ADMIN_SIGNUP_EMAIL_SUFFIX = ''
    CHAT_STREAM_HEARTBEAT_SECONDS = 1
    LOG_FILE = None
    MAJOR_EVENTS_LOG = None


def missing_settings(config):
    required = list(config.get('REQUIRED_SETTINGS', ()))
    if config.get('PAYMENT_GATEWAY') == 'http':
        required.extend(config.get('HTTP_GATEWAY_SETTINGS', ()))
    return [key for key in required if not config.get(key)]
