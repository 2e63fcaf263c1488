from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
socketio = SocketIO(async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    origins = flask_app.config.get('CORS_ORIGINS') or '*'
    if origins == ['*']:
        origins = '*'
    CORS(flask_app, supports_credentials=True, origins=origins)

    socketio.init_app(flask_app, cors_allowed_origins=origins)

    # Outbound commerce platform client; tests swap in a fake after create_app
    from bargain.services.commerce import ShopifyClient, lookup_access_token
    flask_app.extensions['commerce'] = ShopifyClient(
        token_lookup=lookup_access_token,
        api_version=flask_app.config.get('SHOPIFY_API_VERSION', '2024-01'),
        timeout=flask_app.config.get('SHOPIFY_TIMEOUT_SEC', 10),
    )

    from bargain.main import main
    flask_app.register_blueprint(main)

    from bargain.api.game import game
    # Storefront widget endpoints
    flask_app.register_blueprint(game, url_prefix='/api/game')

    from bargain.api.webhooks import webhooks
    flask_app.register_blueprint(webhooks, url_prefix='/api/webhooks')

    from bargain.api.admin import admin
    flask_app.register_blueprint(admin, url_prefix='/api/admin')

    from bargain.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    # Flask-Login user loader
    from bargain.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @click.command('db-reset')
    def db_reset_command():
        """Drops and recreates the database, seeding one admin account."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            admin_user = User(username='admin')
            admin_user.set_password('password')
            db.session.add(admin_user)
            db.session.commit()
            print('Database has been reset and seeded!')

    @click.command('create-admin')
    @click.argument('username')
    @click.argument('password')
    def create_admin_command(username, password):
        """Creates (or re-keys) an admin account."""
        with flask_app.app_context():
            user = User.query.filter_by(username=username).first()
            if user is None:
                user = User(username=username)
            user.set_password(password)
            db.session.add(user)
            db.session.commit()
            print(f'Admin {username} saved.')

    @click.command('expire-sessions')
    def expire_sessions_command():
        """Moves pending play sessions past their TTL to 'expired'."""
        from bargain.services.play.sweeper import run_expiry_sweep
        with flask_app.app_context():
            expired = run_expiry_sweep(flask_app)
            print(f'Expired {expired} session(s).')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(create_admin_command)
    flask_app.cli.add_command(expire_sessions_command)

    return flask_app
