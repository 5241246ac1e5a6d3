import logging
from functools import wraps

from flask import Blueprint, current_app, redirect, request
from flask_login import current_user, login_required, login_user, logout_user

from timeline_crm.errors import ERROR_MESSAGES
from timeline_crm.services.profile_service import ProfileService, validate_login
from timeline_crm.services.session_service import LOGIN_ROUTE, get_session_manager
from timeline_crm.services.supabase_service import get_supabase
from timeline_crm.utils import api_response, as_text

logger = logging.getLogger(__name__)

CLIENTE_HOME = '/cliente/projetos'

auth = Blueprint('auth', __name__)


def admin_required(f):
    """login_required plus role check; clients are sent to their project list."""
    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if not current_user.is_admin:
            logger.info("Acesso de admin negado para %s em %s", current_user.email, request.path)
            return redirect(CLIENTE_HOME)
        return f(*args, **kwargs)

    return decorated


def get_payload():
    """Request body as a dict, from JSON or a form post."""
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.form.to_dict()


def serialize(record, **kwargs):
    return record.to_row(**kwargs) if record is not None else None


@auth.route('/login', methods=['GET', 'POST'])
def login():
    if current_user.is_authenticated:
        return redirect(current_user.home_route)

    if request.method == 'GET':
        return api_response(data={'authenticated': False})

    data = get_payload()
    email = as_text(data.get('email'))
    password = as_text(data.get('password'), strip=False)
    validate_login(email, password)

    manager = get_session_manager()
    route = manager.sign_in(email, password)
    login_user(manager.user, remember=bool(data.get('remember')))

    return api_response(data={'redirect': route, 'user': serialize(manager.user)})


@auth.route('/logout')
def logout():
    route = get_session_manager().sign_out()
    logout_user()
    return redirect(route)


@auth.route('/esqueci-senha', methods=['GET', 'POST'])
def esqueci_senha():
    if request.method == 'GET':
        return api_response(data={'enviado': False})

    data = get_payload()
    ProfileService(get_supabase()).request_password_reset(data.get('email'), current_app.config['SITE_URL'])
    return api_response(data={
        'enviado': True,
        'mensagem': 'Enviamos um link de recuperação para o seu email.',
    })


@auth.route('/perfil', methods=['GET', 'POST'])
@login_required
def perfil():
    if request.method == 'GET':
        return api_response(data=serialize(current_user))

    data = get_payload()
    ProfileService(get_supabase()).update_profile(current_user, data.get('nome'), data.get('telefone'))
    user = get_session_manager().refresh_user()
    return api_response(data=serialize(user))


@auth.route('/alterar-senha', methods=['POST'])
@login_required
def alterar_senha():
    data = get_payload()
    ProfileService(get_supabase()).change_password(
        current_user,
        data.get('senha_atual'),
        data.get('nova_senha'),
        data.get('confirmar_senha'),
    )
    return api_response(data={'mensagem': 'Senha alterada com sucesso!'})


@auth.route('/api/sessao/visibilidade', methods=['POST'])
@login_required
def visibilidade():
    """Called by the browser when the tab returns to the foreground."""
    data = get_payload()
    visible = data.get('visible', True)
    if isinstance(visible, str):
        visible = visible.lower() not in ('false', '0', 'hidden')

    route = get_session_manager().on_visibility_change(visible)
    if route == LOGIN_ROUTE:
        logout_user()
        return api_response(success=False, data={'redirect': route}, error=ERROR_MESSAGES['session_expired'], status=401)
    return api_response(data={'redirect': None})
