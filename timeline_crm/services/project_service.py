import logging

from timeline_crm.errors import TimelineCRMError, ValidationError, handle_supabase_error
from timeline_crm.models import Projeto, StatusEtapa, TimelineEntry, parse_record, parse_records
from timeline_crm.services.timeline_service import TimelineService, sort_entries
from timeline_crm.utils import as_bool, as_text, is_required, is_valid_date_range, parse_date

logger = logging.getLogger(__name__)

PROJETO_SELECT = '*, cliente:clientes(*)'
PROJETO_TIMELINE_SELECT = (
    '*, cliente:clientes(*), '
    'timeline:projeto_timeline(*, etapa:etapas(*, fase:fases(*)), arquivos(*))'
)
PROJETO_FIELDS = ('cliente_id', 'nome', 'descricao', 'data_inicio', 'data_fim_prevista', 'ativo')
RECENT_PROJECTS_LIMIT = 5


def can_access_project(user, projeto):
    """Admins see every project; clients only the ones of their own company."""
    if user is None or projeto is None:
        return False
    if user.is_admin:
        return True
    return bool(user.cliente_id) and user.cliente_id == projeto.cliente_id


def clean_projeto(data):
    """Validates and normalizes the editable project fields present in ``data``."""
    row = {key: data[key] for key in PROJETO_FIELDS if key in data}
    errors = {}

    for key in ('data_inicio', 'data_fim_prevista'):
        if key in row:
            try:
                parsed = parse_date(row[key])
            except ValueError:
                errors[key] = 'Data inválida'
                continue
            row[key] = parsed.isoformat() if parsed else None

    for key in ('nome', 'descricao'):
        if row.get(key) is not None:
            row[key] = as_text(row[key]) or None

    if 'ativo' in row:
        row['ativo'] = as_bool(row['ativo'])

    if errors:
        raise ValidationError(errors=errors)
    return row


def validate_projeto(row):
    errors = {}
    if not is_required(row.get('cliente_id')):
        errors['cliente_id'] = 'Cliente é obrigatório'
    if not is_required(row.get('nome')):
        errors['nome'] = 'Nome do projeto é obrigatório'
    if not is_required(row.get('data_inicio')):
        errors['data_inicio'] = 'Data de início é obrigatória'
    elif row.get('data_fim_prevista') and not is_valid_date_range(
        parse_date(row['data_inicio']), parse_date(row['data_fim_prevista'])
    ):
        errors['data_fim_prevista'] = 'Data de fim deve ser posterior à data de início'
    if errors:
        raise ValidationError(errors=errors)


class ProjetoService:

    def __init__(self, client, timeline=None):
        self.client = client
        self.timeline = timeline or TimelineService(client)

    def _table(self):
        return self.client.table('projetos')

    def list_all(self):
        try:
            res = self._table().select(PROJETO_SELECT).order('created_at', desc=True).execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        return parse_records(Projeto, res.data)

    def list_by_cliente(self, cliente_id):
        try:
            res = self._table().select(PROJETO_SELECT) \
                .eq('cliente_id', cliente_id) \
                .order('created_at', desc=True) \
                .execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        return parse_records(Projeto, res.data)

    def get(self, projeto_id):
        try:
            res = self._table().select(PROJETO_SELECT).eq('id', projeto_id).single().execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        return parse_record(Projeto, res.data)

    def get_with_timeline(self, projeto_id):
        """Returns (projeto, timeline) with the timeline ordered by phase, then step."""
        try:
            res = self._table().select(PROJETO_TIMELINE_SELECT).eq('id', projeto_id).single().execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        projeto = parse_record(Projeto, res.data)
        timeline = parse_records(TimelineEntry, (res.data or {}).get('timeline'))
        return projeto, sort_entries(timeline)

    def create(self, data):
        """
        Inserts the project and instantiates its timeline. If the timeline
        cannot be created the project row is deleted and the error re-raised.
        """
        row = clean_projeto(data)
        row.setdefault('ativo', True)
        validate_projeto(row)

        try:
            res = self._table().insert(row).execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        projeto = parse_record(Projeto, res.data[0] if res.data else None)

        try:
            self.timeline.instantiate_timeline(projeto.id)
        except TimelineCRMError:
            logger.error("Falha ao criar timeline do projeto %s, removendo projeto", projeto.id)
            self._rollback(projeto.id)
            raise

        logger.info("Projeto criado: %s (%s)", projeto.nome, projeto.id)
        return projeto

    def _rollback(self, projeto_id):
        try:
            self._table().delete().eq('id', projeto_id).execute()
        except Exception:
            logger.exception("Não foi possível remover o projeto órfão %s", projeto_id)

    def update(self, projeto_id, data):
        row = clean_projeto(data)
        if not row:
            raise ValidationError('Nenhum campo para atualizar')

        current = self.get(projeto_id).to_row(exclude={'cliente'})
        validate_projeto({**current, **row})

        try:
            res = self._table().update(row).eq('id', projeto_id).execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        return parse_record(Projeto, res.data[0] if res.data else None)

    def dashboard(self):
        try:
            total = self._table().select('*', count='exact', head=True).execute()
            ativos = self._table().select('*', count='exact', head=True).eq('ativo', True).execute()
            statuses = self.client.table('projeto_timeline').select('status').execute()
            recentes = self._table().select(PROJETO_SELECT) \
                .order('created_at', desc=True) \
                .limit(RECENT_PROJECTS_LIMIT) \
                .execute()
        except Exception as e:
            raise handle_supabase_error(e) from e

        status_count = {status.value: 0 for status in StatusEtapa}
        for row in statuses.data or []:
            if row.get('status') in status_count:
                status_count[row['status']] += 1

        return {
            'total_projetos': total.count or 0,
            'projetos_ativos': ativos.count or 0,
            'etapas_concluidas': status_count[StatusEtapa.CONCLUIDO.value],
            'etapas_em_andamento': status_count[StatusEtapa.EM_ANDAMENTO.value],
            'etapas_pendentes': status_count[StatusEtapa.PENDENTE.value],
            'projetos_recentes': parse_records(Projeto, recentes.data),
        }
