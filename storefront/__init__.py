from flask import Flask
from flask_migrate import Migrate
from flask_login import LoginManager
from storefront.extensions import db, enable_sqlite_savepoints
from storefront.config import Config, missing_settings
from storefront.errors import ConfigurationError, register_error_handlers
from storefront.middleware import setup_auth_middleware
import logging

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)

migrate = Migrate()
login_manager = LoginManager()
login_manager.login_view = 'auth.login'
login_manager.login_message = 'Please log in to access this page.'


def configure_logging(app):
    handlers = [logging.StreamHandler()]
    if app.config.get('LOG_FILE'):
        handlers.append(logging.FileHandler(app.config['LOG_FILE']))
    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers
    )

    # Login, registration, order and payment events in a file of their own
    major_path = app.config.get('MAJOR_EVENTS_LOG')
    major_logger = logging.getLogger('major_events')
    if major_path and not any(
            isinstance(h, logging.FileHandler) for h in major_logger.handlers):
        handler = logging.FileHandler(major_path)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        major_logger.addHandler(handler)
        major_logger.setLevel(logging.INFO)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    missing = missing_settings(app.config)
    if missing:
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}")

    configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    enable_sqlite_savepoints(app)

    from storefront.services.payment_gateway import build_gateway
    from storefront.services.realtime import MessageBroker

    app.extensions['payment_gateway'] = build_gateway(app.config)
    app.extensions['chat_broker'] = MessageBroker()

    # Setup user loader
    from storefront.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    register_error_handlers(app)

    # Register blueprints
    from storefront.blueprints import (
        admin,
        auth,
        cart,
        chat,
        orders,
        products,
    )

    app.register_blueprint(auth.bp, url_prefix='/')
    app.register_blueprint(products.bp, url_prefix='/')
    app.register_blueprint(cart.bp, url_prefix='/')
    app.register_blueprint(orders.bp, url_prefix='/')
    app.register_blueprint(admin.bp, url_prefix='/')
    app.register_blueprint(chat.bp, url_prefix='/')

    # Site-wide login protection
    setup_auth_middleware(app)

    # Database tables are managed via Flask-Migrate ('flask db upgrade')

    logger.info("Storefront application initialized")
    return app
