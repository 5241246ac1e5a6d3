"""
Timeline JSON API: per-phase board, status/notes updates, attachments and
a server-sent-events stream fed by the project's realtime channel.
"""
from flask import Blueprint, current_app, request
from flask_login import current_user, login_required

from timeline_crm.auth import get_payload, serialize
from timeline_crm.errors import PermissionDeniedError, ValidationError
from timeline_crm.models import FaseNome
from timeline_crm.routes.streaming import event_stream, feed_tokens
from timeline_crm.services.attachment_service import AttachmentRegistrar
from timeline_crm.services.project_service import ProjetoService, can_access_project
from timeline_crm.services.realtime_service import RealtimeFeed
from timeline_crm.services.supabase_service import get_supabase
from timeline_crm.services.timeline_service import TimelineService, TimelineTracker, calculate_progress
from timeline_crm.utils import api_response, as_text

timeline_bp = Blueprint('timeline', __name__, url_prefix='/api')


def ensure_admin():
    if not current_user.is_admin:
        raise PermissionDeniedError()


def ensure_project_access(client, projeto_id):
    projeto = ProjetoService(client).get(projeto_id)
    if not can_access_project(current_user, projeto):
        raise PermissionDeniedError()
    return projeto


def ensure_entry_access(client, entry_id):
    entry = TimelineService(client).get(entry_id)
    ensure_project_access(client, entry.projeto_id)
    return entry


def phase_arg():
    return request.args.get('fase', FaseNome.DIAGNOSTICO.value)


def phase_snapshot(entries):
    return {
        'etapas': [serialize(entry) for entry in entries],
        'progresso': calculate_progress(entries),
    }


@timeline_bp.route('/projetos/<projeto_id>/timeline')
@login_required
def project_timeline(projeto_id):
    client = get_supabase()
    ensure_project_access(client, projeto_id)
    entries = TimelineService(client).list_by_phase(projeto_id, phase_arg())
    return api_response(data=phase_snapshot(entries))


@timeline_bp.route('/projetos/<projeto_id>/timeline/stream')
@login_required
def project_timeline_stream(projeto_id):
    client = get_supabase()
    ensure_project_access(client, projeto_id)

    tracker = TimelineTracker(projeto_id, phase_arg())
    tracker.load(TimelineService(client))

    feed = RealtimeFeed.for_project_timeline(
        current_app.config['SUPABASE_URL'],
        current_app.config['SUPABASE_KEY'],
        projeto_id,
        inbox=tracker.inbox,
        **feed_tokens(client)
    )
    return event_stream(
        feed, 'timeline',
        snapshot=lambda: phase_snapshot(tracker.entries),
        poll=tracker.poll,
        poll_seconds=current_app.config['STREAM_POLL_SECONDS'],
    )


@timeline_bp.route('/timeline/<entry_id>', methods=['PATCH'])
@login_required
def update_entry(entry_id):
    ensure_admin()
    data = get_payload()
    service = TimelineService(get_supabase())

    observacoes = data.get('observacoes')
    if observacoes is not None:
        observacoes = as_text(observacoes, strip=False)

    if data.get('status'):
        entry = service.update_status(entry_id, data['status'], observacoes=observacoes)
    elif 'observacoes' in data:
        entry = service.update_notes(entry_id, observacoes)
    else:
        raise ValidationError(errors={'status': 'Informe o status ou as observações'})

    return api_response(data=serialize(entry))


@timeline_bp.route('/timeline/<entry_id>/arquivos', methods=['GET', 'POST'])
@login_required
def entry_files(entry_id):
    client = get_supabase()
    registrar = AttachmentRegistrar(client)

    if request.method == 'GET':
        ensure_entry_access(client, entry_id)
        return api_response(data=[serialize(a) for a in registrar.list(entry_id)])

    ensure_admin()
    file = request.files.get('file')
    if file is None or not file.filename:
        raise ValidationError(errors={'file': 'Selecione um arquivo'})
    arquivo = registrar.upload(file, entry_id, current_user.id)
    return api_response(data=serialize(arquivo), status=201)


@timeline_bp.route('/timeline/<entry_id>/links', methods=['POST'])
@login_required
def entry_links(entry_id):
    ensure_admin()
    data = get_payload()
    arquivo = AttachmentRegistrar(get_supabase()).add_link(
        data.get('url'), entry_id, current_user.id, nome=data.get('nome')
    )
    return api_response(data=serialize(arquivo), status=201)


@timeline_bp.route('/arquivos/<arquivo_id>', methods=['DELETE'])
@login_required
def delete_file(arquivo_id):
    ensure_admin()
    arquivo = AttachmentRegistrar(get_supabase()).remove(arquivo_id)
    return api_response(data={'id': arquivo.id})
