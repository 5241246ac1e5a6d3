from flask import Blueprint, current_app, request
from flask_login import current_user

from timeline_crm.auth import admin_required, get_payload, serialize
from timeline_crm.errors import ValidationError
from timeline_crm.routes.streaming import event_stream, feed_tokens
from timeline_crm.services.client_service import ClienteService
from timeline_crm.services.project_service import ProjetoService
from timeline_crm.services.realtime_service import RealtimeFeed
from timeline_crm.services.supabase_service import create_detached_client, get_supabase
from timeline_crm.services.system_config_service import SystemConfigService, SystemConfigTracker
from timeline_crm.services.timeline_service import calculate_progress
from timeline_crm.utils import api_response

admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


def serialize_timeline(entries):
    return {
        'etapas': [serialize(entry) for entry in entries],
        'progresso': calculate_progress(entries),
    }


@admin_bp.route('/dashboard')
@admin_required
def dashboard():
    data = ProjetoService(get_supabase()).dashboard()
    data['projetos_recentes'] = [serialize(p) for p in data['projetos_recentes']]
    return api_response(data=data)


# --- CLIENTES ---

@admin_bp.route('/clientes')
@admin_required
def clientes():
    return api_response(data=[serialize(c) for c in ClienteService(get_supabase()).list_all()])


@admin_bp.route('/clientes/novo', methods=['GET', 'POST'])
@admin_required
def novo_cliente():
    if request.method == 'GET':
        return api_response(data={'campos': ['nome', 'email', 'telefone', 'empresa', 'ativo']})

    service = ClienteService(get_supabase(), signup_auth=create_detached_client().auth)
    cliente, credentials = service.create(get_payload())
    return api_response(data={'cliente': serialize(cliente), 'credenciais': credentials}, status=201)


@admin_bp.route('/clientes/<cliente_id>', methods=['GET', 'POST', 'PUT'])
@admin_required
def cliente_detail(cliente_id):
    service = ClienteService(get_supabase())
    if request.method == 'GET':
        return api_response(data=serialize(service.get(cliente_id)))
    return api_response(data=serialize(service.update(cliente_id, get_payload())))


# --- PROJETOS ---

@admin_bp.route('/projetos')
@admin_required
def projetos():
    service = ProjetoService(get_supabase())
    cliente_id = request.args.get('cliente_id')
    items = service.list_by_cliente(cliente_id) if cliente_id else service.list_all()
    return api_response(data=[serialize(p) for p in items])


@admin_bp.route('/projetos/novo', methods=['GET', 'POST'])
@admin_required
def novo_projeto():
    client = get_supabase()
    if request.method == 'GET':
        clientes = ClienteService(client).list_all()
        return api_response(data={'clientes': [serialize(c) for c in clientes if c.ativo]})

    projeto = ProjetoService(client).create(get_payload())
    return api_response(data=serialize(projeto), status=201)


@admin_bp.route('/projetos/<projeto_id>')
@admin_required
def projeto_detail(projeto_id):
    projeto, timeline = ProjetoService(get_supabase()).get_with_timeline(projeto_id)
    return api_response(data={'projeto': serialize(projeto), **serialize_timeline(timeline)})


@admin_bp.route('/projetos/<projeto_id>/editar', methods=['GET', 'POST', 'PUT'])
@admin_required
def editar_projeto(projeto_id):
    service = ProjetoService(get_supabase())
    if request.method == 'GET':
        return api_response(data=serialize(service.get(projeto_id)))
    return api_response(data=serialize(service.update(projeto_id, get_payload())))


# --- CONFIGURAÇÕES ---

@admin_bp.route('/config')
@admin_required
def config():
    return api_response(data=serialize(SystemConfigService(get_supabase()).get()))


@admin_bp.route('/config/stream')
@admin_required
def config_stream():
    """Logo and favicon changes made by any admin, pushed as they happen."""
    client = get_supabase()
    tracker = SystemConfigTracker()
    tracker.load(SystemConfigService(client))

    feed = RealtimeFeed.for_system_config(
        current_app.config['SUPABASE_URL'],
        current_app.config['SUPABASE_KEY'],
        inbox=tracker.inbox,
        **feed_tokens(client)
    )
    return event_stream(
        feed, 'config',
        snapshot=lambda: serialize(tracker.config),
        poll=tracker.poll,
        poll_seconds=current_app.config['STREAM_POLL_SECONDS'],
    )


@admin_bp.route('/config/<kind>', methods=['POST'])
@admin_required
def config_image(kind):
    if kind not in ('logo', 'favicon'):
        return api_response(success=False, error='Página não encontrada', status=404)

    file = request.files.get('file')
    if file is None or not file.filename:
        raise ValidationError(errors={'file': 'Selecione um arquivo'})

    service = SystemConfigService(get_supabase())
    if kind == 'logo':
        updated = service.update_logo(file, current_user.id)
    else:
        updated = service.update_favicon(file, current_user.id)
    return api_response(data=serialize(updated))
