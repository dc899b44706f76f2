import logging
import os
from flask import Flask, request, session
from flask_babel import Babel
from .models import db

def get_locale():
    selected_locale = request.args.get('lang', session.get('lang', 'fr'))
    return selected_locale

def create_app(test_config=None):
    app = Flask(__name__, template_folder="../templates")

    @app.context_processor
    def inject_globals():
        return {
            'currency_symbol': app.config['CURRENCY_SYMBOL'],
            'company_name': app.config['COMPANY_NAME'],
        }

    @app.context_processor
    def inject_locale():
        return dict(get_locale=get_locale)

    @app.before_request
    def before_request():
        """Capture language parameter and save to session for persistence across pages"""
        if 'lang' in request.args:
            session['lang'] = request.args.get('lang')

    # Load configurations
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///fournil.db")
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)
    app.config['SQLALCHEMY_DATABASE_URI'] = DATABASE_URL
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    # Secret key for session management (operator context and language)
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')

    app.config['BABEL_DEFAULT_LOCALE'] = 'fr'
    app.config['BABEL_SUPPORTED_LOCALES'] = ['fr', 'en']
    app.config['BABEL_TRANSLATION_DIRECTORIES'] = '../translations'

    app.config['CURRENCY_SYMBOL'] = os.getenv('CURRENCY_SYMBOL', 'Fcfa')
    app.config['COMPANY_NAME'] = os.getenv('COMPANY_NAME', 'EGREC BOULANGERIE')

    # Operator context used until a login layer sets it in the session
    app.config['DEFAULT_COMPANY'] = os.getenv('DEFAULT_COMPANY', 'egrec')
    app.config['DEFAULT_AGENCY'] = os.getenv('DEFAULT_AGENCY', 'Principale')

    # Local cache mirroring products and waste records while the database is unreachable
    app.config['OFFLINE_CACHE_PATH'] = os.getenv(
        'OFFLINE_CACHE_PATH',
        os.path.join(app.instance_path, 'offline_cache.db')
    )

    app.config['LOG_LEVEL'] = os.getenv('LOG_LEVEL', 'INFO')

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO))

    cache_dir = os.path.dirname(app.config['OFFLINE_CACHE_PATH'])
    if cache_dir and not os.path.exists(cache_dir):
        try:
            os.makedirs(cache_dir)
        except OSError:
            # Directory might already exist or we don't have permissions
            app.logger.warning("Could not create offline cache directory %s", cache_dir)

    Babel(app, locale_selector=get_locale)

    # Initialize database
    db.init_app(app)

    # Register blueprints
    from .routes import raw_materials_blueprint, products_blueprint, production_blueprint, waste_blueprint
    app.register_blueprint(raw_materials_blueprint)
    app.register_blueprint(products_blueprint)
    app.register_blueprint(production_blueprint)
    app.register_blueprint(waste_blueprint)

    from .cli import products_cli, waste_cli
    app.cli.add_command(products_cli)
    app.cli.add_command(waste_cli)

    with app.app_context():
        db.create_all()

    return app
