"""
Timeline status tracker.

Each project holds one ``projeto_timeline`` row per catalog step. Rows move
through pendente -> em_andamento -> concluido; the service stamps the start
and completion timestamps, and the in-memory side (``TimelineTracker``) keeps
a phase's entries in sync with realtime UPDATE events.
"""
import logging
import math
import queue

from timeline_crm.errors import NotFoundError, TimelineCRMError, ValidationError, handle_supabase_error
from timeline_crm.models import (
    STATUS_ORDER,
    Etapa,
    Fase,
    FaseNome,
    StatusEtapa,
    TimelineEntry,
    parse_record,
    parse_records,
)
from timeline_crm.services.realtime_service import drain
from timeline_crm.utils import get_now_iso

logger = logging.getLogger(__name__)

TABLE = 'projeto_timeline'
TIMELINE_SELECT = '*, etapa:etapas!inner(*, fase:fases!inner(*)), arquivos(*)'

# Embedded relations that realtime rows never carry
EMBEDDED_FIELDS = ('etapa', 'arquivos')


def calculate_progress(entries):
    """Percentage of concluded entries, halves rounded up. An empty list is 0%."""
    total = len(entries)
    if total == 0:
        return 0
    done = sum(1 for entry in entries if entry.status == StatusEtapa.CONCLUIDO)
    return math.floor(done / total * 100 + 0.5)


def sort_entries(entries):
    return sorted(entries, key=lambda entry: (entry.fase_ordem, entry.etapa_ordem))


def merge_realtime_update(entries, payload):
    """
    Applies one realtime change to a list of entries and returns the new list.

    Only UPDATE events for an id already in ``entries`` are merged: the new
    row's columns go over the held entry, keeping its embedded step and files.
    Anything else returns ``entries`` unchanged.
    """
    if not payload or payload.get('eventType') != 'UPDATE':
        return entries

    new = payload.get('new') or {}
    entry_id = new.get('id')
    if entry_id is None:
        return entries

    merged = []
    for entry in entries:
        if entry.id != entry_id:
            merged.append(entry)
            continue

        row = entry.to_row()
        row.update({key: value for key, value in new.items() if key not in EMBEDDED_FIELDS})
        try:
            merged.append(parse_record(TimelineEntry, row))
        except TimelineCRMError:
            logger.warning("[Timeline] Atualização em tempo real inválida para %s, ignorando", entry_id)
            merged.append(entry)
    return merged


class TimelineService:

    def __init__(self, client):
        self.client = client

    def _table(self):
        return self.client.table(TABLE)

    def get(self, entry_id):
        try:
            res = self._table().select(TIMELINE_SELECT).eq('id', entry_id).single().execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        return parse_record(TimelineEntry, res.data)

    def list_by_project(self, projeto_id):
        try:
            res = self._table().select(TIMELINE_SELECT).eq('projeto_id', projeto_id).execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        return sort_entries(parse_records(TimelineEntry, res.data))

    def list_by_phase(self, projeto_id, fase):
        """Entries of one phase of a project, ordered by step."""
        try:
            fase = FaseNome(fase)
        except ValueError:
            raise ValidationError(f"Fase inválida: {fase}", errors={'fase': 'Fase inválida'})

        try:
            res = self._table().select(TIMELINE_SELECT) \
                .eq('projeto_id', projeto_id) \
                .eq('etapa.fase.nome', fase.value) \
                .execute()
        except Exception as e:
            raise handle_supabase_error(e) from e

        entries = parse_records(TimelineEntry, res.data)
        return sorted(entries, key=lambda entry: entry.etapa_ordem)

    def update_status(self, entry_id, status, observacoes=None, current=None):
        """
        Sets the status (and the notes, when given) of one entry.

        ``data_inicio`` is stamped when entering em_andamento and the entry
        has none; ``data_conclusao`` is stamped on every move to concluido.
        ``current`` is the entry as held by the caller; without it the row
        is read first.
        """
        try:
            status = StatusEtapa(status)
        except ValueError:
            raise ValidationError(f"Status inválido: {status}", errors={'status': 'Status inválido'})

        if current is None:
            current = self.get(entry_id)

        if STATUS_ORDER[status] < STATUS_ORDER[current.status]:
            logger.warning(
                "[Timeline] Etapa %s voltou de %s para %s", entry_id, current.status.value, status.value,
                extra={'projeto_id': current.projeto_id},
            )

        updates = {'status': status.value}
        if observacoes is not None:
            updates['observacoes'] = observacoes

        now = get_now_iso()
        if status == StatusEtapa.EM_ANDAMENTO and current.data_inicio is None:
            updates['data_inicio'] = now
        if status == StatusEtapa.CONCLUIDO:
            updates['data_conclusao'] = now

        entry = self._update(entry_id, updates)
        logger.info("[Timeline] Etapa %s -> %s", entry_id, status.value, extra={'projeto_id': entry.projeto_id})
        return entry

    def update_notes(self, entry_id, observacoes):
        return self._update(entry_id, {'observacoes': observacoes or ''})

    def _update(self, entry_id, updates):
        try:
            res = self._table().update(updates).eq('id', entry_id).execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        if not res.data:
            raise NotFoundError()
        return parse_record(TimelineEntry, res.data[0])

    def instantiate_timeline(self, projeto_id):
        """
        Creates one pendente entry per catalog step in a single bulk insert.
        Raises when the phases or steps are missing; the caller decides what
        to do with the project.
        """
        try:
            fases = parse_records(Fase, self.client.table('fases').select('*').execute().data)
            etapas = parse_records(Etapa, self.client.table('etapas').select('*').execute().data)
        except TimelineCRMError:
            raise
        except Exception as e:
            raise handle_supabase_error(e) from e

        found = {fase.nome for fase in fases}
        missing = [nome.value for nome in FaseNome if nome not in found]
        if missing:
            raise NotFoundError(f"Fases não encontradas no banco: {', '.join(missing)}")

        fase_ids = {fase.id for fase in fases}
        rows = [
            {
                'projeto_id': projeto_id,
                'etapa_id': etapa.id,
                'status': StatusEtapa.PENDENTE.value,
                'observacoes': '',
            }
            for etapa in etapas
            if etapa.fase_id in fase_ids
        ]
        if not rows:
            raise NotFoundError('Etapas não encontradas no banco')

        try:
            res = self._table().insert(rows).execute()
        except Exception as e:
            raise handle_supabase_error(e) from e

        logger.info(
            "[Timeline] %d etapas criadas para o projeto %s", len(rows), projeto_id, extra={'projeto_id': projeto_id}
        )
        return parse_records(TimelineEntry, res.data)


class TimelineTracker:
    """
    In-memory view of one phase of a project.

    Realtime payloads are pushed into ``inbox`` (by a ``RealtimeFeed``) and
    applied on ``poll``.
    """

    def __init__(self, projeto_id, fase, entries=None, inbox=None):
        self.projeto_id = projeto_id
        self.fase = FaseNome(fase)
        self.entries = list(entries or [])
        self.inbox = inbox if inbox is not None else queue.Queue()

    @property
    def progress(self):
        return calculate_progress(self.entries)

    def load(self, service):
        self.entries = service.list_by_phase(self.projeto_id, self.fase)
        return self.entries

    def apply(self, payload):
        self.entries = merge_realtime_update(self.entries, payload)
        return self.entries

    def poll(self, timeout=None):
        """
        Applies every queued payload. With a timeout, waits that long for the
        first one. Returns the number of payloads consumed.
        """
        consumed = 0
        for payload in drain(self.inbox, timeout):
            self.apply(payload)
            consumed += 1
        return consumed

    def set_status(self, service, entry_id, status, observacoes=None):
        """Updates through the service and replaces the held entry only on success."""
        current = self.find(entry_id)
        updated = service.update_status(entry_id, status, observacoes=observacoes, current=current)
        self._replace(updated)
        return updated

    def set_notes(self, service, entry_id, observacoes):
        updated = service.update_notes(entry_id, observacoes)
        self._replace(updated)
        return updated

    def find(self, entry_id):
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None

    def _replace(self, updated):
        self.entries = merge_realtime_update(
            self.entries, {'eventType': 'UPDATE', 'new': updated.to_row(exclude=set(EMBEDDED_FIELDS))}
        )
