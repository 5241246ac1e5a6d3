import logging
import os

from dotenv import load_dotenv
from flask import Flask, redirect, request
from flask_login import LoginManager
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from timeline_crm.errors import ERROR_MESSAGES, TimelineCRMError, ValidationError
from timeline_crm.logging_config import configure_logging
from timeline_crm.services.session_service import close_session_manager, get_session_manager
from timeline_crm.services.supabase_service import init_supabase
from timeline_crm.utils import api_response

load_dotenv()  # Load env vars before anything else

logger = logging.getLogger(__name__)


def load_config(app, overrides=None):
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'timeline-crm-dev-key')
    app.config['SUPABASE_URL'] = os.environ.get('SUPABASE_URL')
    app.config['SUPABASE_KEY'] = os.environ.get('SUPABASE_KEY')
    app.config['SITE_URL'] = os.environ.get('SITE_URL', 'http://localhost:5000')
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL')
    app.config['LOG_FORMAT'] = os.environ.get('LOG_FORMAT')
    app.config['SESSION_LOAD_TIMEOUT'] = float(os.environ.get('SESSION_LOAD_TIMEOUT', 10))
    app.config['STREAM_POLL_SECONDS'] = float(os.environ.get('STREAM_POLL_SECONDS', 15))
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
    if overrides:
        app.config.update(overrides)


def create_app(config=None):
    app = Flask(__name__, instance_path='/tmp')
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    # --- CONFIGURATION ---
    load_config(app, config)
    configure_logging(app)

    # Missing backend credentials are fatal
    init_supabase(app)

    # --- INITIALIZE EXTENSIONS ---
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        return get_session_manager().current_user_for(user_id)

    @login_manager.unauthorized_handler
    def unauthorized():
        return redirect('/login')

    app.teardown_appcontext(close_session_manager)

    # --- BLUEPRINTS ---
    from timeline_crm.auth import auth
    from timeline_crm.routes.admin import admin_bp
    from timeline_crm.routes.cliente import cliente_bp
    from timeline_crm.routes.timeline import timeline_bp

    app.register_blueprint(auth)
    app.register_blueprint(admin_bp)
    app.register_blueprint(cliente_bp)
    app.register_blueprint(timeline_bp)

    @app.route('/')
    def index():
        return redirect('/login')

    @app.route('/admin')
    def admin_index():
        return redirect('/admin/dashboard')

    @app.route('/cliente')
    def cliente_index():
        return redirect('/cliente/projetos')

    # --- ERROR HANDLERS ---
    @app.errorhandler(TimelineCRMError)
    def handle_app_error(error):
        extra = {'path': request.path, 'method': request.method}
        if error.status_code >= 500:
            logger.error("%s: %s (%s)", type(error).__name__, error.message, error.details, extra=extra)
        else:
            logger.warning("%s: %s", type(error).__name__, error.message, extra=extra)

        data = {'errors': error.errors} if isinstance(error, ValidationError) and error.errors else None
        return api_response(success=False, data=data, error=error.message, status=error.status_code)

    @app.errorhandler(404)
    def not_found_error(error):
        return api_response(success=False, error='Página não encontrada', status=404)

    @app.errorhandler(Exception)
    def internal_error(error):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unhandled error", extra={'path': request.path, 'method': request.method})
        return api_response(success=False, error=ERROR_MESSAGES['generic'], status=500)

    return app
