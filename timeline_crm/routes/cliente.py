from flask import Blueprint
from flask_login import current_user, login_required

from timeline_crm.auth import serialize
from timeline_crm.errors import PermissionDeniedError
from timeline_crm.routes.admin import serialize_timeline
from timeline_crm.services.project_service import ProjetoService, can_access_project
from timeline_crm.services.supabase_service import get_supabase
from timeline_crm.utils import api_response

cliente_bp = Blueprint('cliente', __name__, url_prefix='/cliente')


@cliente_bp.route('/projetos')
@login_required
def projetos():
    service = ProjetoService(get_supabase())
    if current_user.is_admin:
        items = service.list_all()
    elif current_user.cliente_id:
        items = [p for p in service.list_by_cliente(current_user.cliente_id) if p.ativo]
    else:
        items = []
    return api_response(data=[serialize(p) for p in items])


@cliente_bp.route('/projetos/<projeto_id>')
@login_required
def projeto_detail(projeto_id):
    projeto, timeline = ProjetoService(get_supabase()).get_with_timeline(projeto_id)
    if not can_access_project(current_user, projeto):
        raise PermissionDeniedError()
    return api_response(data={'projeto': serialize(projeto), **serialize_timeline(timeline)})
